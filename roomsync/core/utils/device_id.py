import os
import uuid
from typing import Optional

from roomsync.config.config_loader import get_project_dir
from roomsync.services.logging import setup_logging

TAG = __name__
logger = setup_logging()

DEVICE_ID_ENV_VAR = "ROOMSYNC_DEVICE_ID_PATH"

_device_id: Optional[str] = None


def _default_path() -> str:
    return os.environ.get(DEVICE_ID_ENV_VAR) or os.path.join(
        get_project_dir(), "data", ".device_id"
    )


def get_device_id(path: Optional[str] = None) -> str:
    """Return this installation's device id, generating and persisting it once.

    When the file cannot be written the id lives only for this process, so the
    device will not be recognised as an alarm's owner after a restart.
    """
    global _device_id
    if _device_id is not None and path is None:
        return _device_id

    path = path or _default_path()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            stored = fh.read().strip()
        if stored:
            _device_id = stored
            return stored
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.bind(tag=TAG).warning(f"Cannot read device id from {path}: {exc}")

    device_id = str(uuid.uuid4())
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(device_id)
        logger.bind(tag=TAG).info(f"Generated device id {device_id}")
    except OSError as exc:
        logger.bind(tag=TAG).warning(
            f"Cannot persist device id to {path}: {exc}; using an in-memory id"
        )
    _device_id = device_id
    return device_id


def reset_device_id_cache() -> None:
    global _device_id
    _device_id = None
