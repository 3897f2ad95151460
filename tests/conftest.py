"""
Shared pytest fixtures for the deploy helper tests.

- settings: Settings pointing every path at a temporary directory
- client: FastAPI TestClient over an app built from those settings
- make_zip: build a zip archive from a {name: content} mapping
"""

import io
import os
import sys
import zipfile
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config_service  # noqa: E402
from config_service import Settings  # noqa: E402


def build_zip(entries: Dict[str, Optional[bytes]]) -> bytes:
    """Entries ending in '/' (or mapped to None) become directory records."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in entries.items():
            if content is None or name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name if name.endswith("/") else name + "/"), b"")
            else:
                zf.writestr(name, content)
    return buf.getvalue()


@pytest.fixture
def make_zip(tmp_path):
    def _make(entries: Dict[str, Optional[bytes]], name: str = "bundle.zip") -> str:
        path = tmp_path / name
        path.write_bytes(build_zip(entries))
        return str(path)

    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        run_script_default_target=str(tmp_path / "run"),
        upload_default_target=str(tmp_path / "uploads"),
        log_file=str(tmp_path / "log.txt"),
    )


@pytest.fixture
def app(settings):
    from main import create_app

    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    config_service.reset_cache()
    yield
    config_service.reset_cache()


def stream_lines(response) -> list:
    return [line for line in response.text.split("\n") if line]
