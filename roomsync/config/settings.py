import os
from typing import Any, Dict

from roomsync.config.config_loader import get_project_dir, load_config

DOCKER_SECRET_DIR = "/opt/secrets/gcp"


def _first_json_file(directory: str) -> str:
    try:
        json_files = sorted(f for f in os.listdir(directory) if f.endswith(".json"))
    except OSError:
        return ""
    for name in json_files:
        found_file = os.path.join(directory, name)
        if os.path.isfile(found_file):
            return found_file
    return ""


def get_gcp_credentials_path() -> str:
    """Return the path to GCP credentials if set via env/config.

    Precedence:
      1) GOOGLE_APPLICATION_CREDENTIALS env var (if it's a file)
      2) If env var points to a directory, sa.json or any JSON file inside it
      3) /opt/secrets/gcp/ directory (Docker secret mount)
      4) data/.gcp/sa.json
      5) any JSON file inside data/.gcp/
    """
    path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if path:
        if os.path.isfile(path):
            return path
        if os.path.isdir(path):
            sa_file = os.path.join(path, "sa.json")
            if os.path.isfile(sa_file):
                return sa_file
            found = _first_json_file(path)
            if found:
                return found

    if os.path.isdir(DOCKER_SECRET_DIR):
        found = _first_json_file(DOCKER_SECRET_DIR)
        if found:
            return found

    default_path = os.path.join(get_project_dir(), "data/.gcp/sa.json")
    if os.path.isfile(default_path):
        return default_path

    default_dir = os.path.join(get_project_dir(), "data/.gcp")
    if os.path.isdir(default_dir):
        return _first_json_file(default_dir)

    return ""


def get_firestore_project() -> str:
    project_id = os.environ.get("FIRESTORE_PROJECT_ID")
    if project_id:
        return project_id
    return (load_config().get("firestore") or {}).get("project_id") or ""


def get_section(name: str) -> Dict[str, Any]:
    return dict(load_config().get(name) or {})
