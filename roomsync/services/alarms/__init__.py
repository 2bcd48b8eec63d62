"""
Shared alarm service.

The scheduler probe and trigger store run server-side (Cloud Function or the
HTTP server); ring sessions, dismissal sync and the room watcher run on each
device. Only the store and config modules touch Firestore or YAML directly.
"""

from . import models  # noqa: F401
from . import firestore_client  # noqa: F401
from . import scheduler  # noqa: F401
from . import store  # noqa: F401

__all__ = [
    "models",
    "firestore_client",
    "scheduler",
    "store",
]
