"""In-app notification fan-out records."""
