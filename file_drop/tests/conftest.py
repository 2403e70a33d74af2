import os
import time

import pytest

from file_drop import config
from file_drop.app.services.storage_manager import StorageManager
from file_drop.main import app


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    """Isolated storage directory for each test."""
    directory = tmp_path / "uploads"
    directory.mkdir()
    monkeypatch.setattr(config, "UPLOAD_DIR", str(directory))
    return directory


@pytest.fixture
def temp_dir(tmp_path, monkeypatch):
    """Where uploads in progress are written."""
    directory = tmp_path / "temp"
    directory.mkdir()
    monkeypatch.setattr(config, "TEMP_DIR", str(directory))
    return directory


@pytest.fixture
def storage_manager(upload_dir, temp_dir):
    return StorageManager(upload_dir, temp_dir)


@pytest.fixture(autouse=True)
def attach_storage_manager(storage_manager):
    """Routes read the storage manager from app state; TestClient without a
    context manager never runs the lifespan, so install one here."""
    app.state.storage_manager = storage_manager
    yield
    app.state.storage_manager = None


def make_file(directory, name, content=b"data", age_seconds=0):
    """Write a file and backdate its mtime by age_seconds."""
    path = directory / name
    path.write_bytes(content)
    if age_seconds:
        mtime = time.time() - age_seconds
        os.utime(path, (mtime, mtime))
    return path


BOUNDARY = "file-drop-test-boundary"


def multipart_body(*parts, boundary=BOUNDARY):
    """Encode (field name, filename or None, content) parts as multipart/form-data."""
    body = b""
    for name, filename, content in parts:
        disposition = f'form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        body += f"--{boundary}\r\nContent-Disposition: {disposition}\r\n\r\n".encode() + content + b"\r\n"
    return body + f"--{boundary}--\r\n".encode()
