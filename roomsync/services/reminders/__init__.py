"""Due-reminder probe run alongside the alarm scheduler."""
