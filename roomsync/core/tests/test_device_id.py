from __future__ import annotations

import uuid

import pytest

from roomsync.core.utils import device_id


@pytest.fixture(autouse=True)
def _reset_cache():
    device_id.reset_device_id_cache()
    yield
    device_id.reset_device_id_cache()


def test_device_id_is_generated_once_and_persisted(tmp_path):
    path = tmp_path / "data" / ".device_id"

    first = device_id.get_device_id(str(path))
    device_id.reset_device_id_cache()
    second = device_id.get_device_id(str(path))

    assert first == second
    assert path.read_text(encoding="utf-8") == first
    uuid.UUID(first)


def test_device_id_env_path(tmp_path, monkeypatch):
    path = tmp_path / "custom_id"
    path.write_text("dev-A\n", encoding="utf-8")
    monkeypatch.setenv(device_id.DEVICE_ID_ENV_VAR, str(path))

    assert device_id.get_device_id() == "dev-A"


def test_unwritable_storage_falls_back_to_memory(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("", encoding="utf-8")
    path = blocker / ".device_id"

    first = device_id.get_device_id(str(path))

    assert first
    assert device_id.get_device_id() == first
