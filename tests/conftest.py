"""Shared pytest fixtures for AI Studio tests."""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# The package creates its default directories at import time; keep them out
# of the working tree.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="aistudio-tests-"))
os.environ.setdefault("AISTUDIO_DATA_DIR", str(_SESSION_DIR / "data"))
os.environ.setdefault("AISTUDIO_UPLOADS_DIR", str(_SESSION_DIR / "uploads"))

from fastapi.testclient import TestClient  # noqa: E402

from aistudio.api.main import create_app  # noqa: E402
from aistudio.core.config import StudioConfig  # noqa: E402
from aistudio.core.generations_db import GenerationsDB  # noqa: E402
from aistudio.core.image_store import ImageStore  # noqa: E402
from tests.helpers import make_data_url  # noqa: E402


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> StudioConfig:
    """Configuration with temporary directories and the simulation disabled.

    No artificial delay, no overload faults.
    """
    return StudioConfig(
        data_dir=str(temp_dir / "data"),
        uploads_dir=str(temp_dir / "uploads"),
        delay_min_ms=0,
        delay_max_ms=0,
        overload_probability=0.0,
        _env_file=None,
    )


@pytest.fixture
def uploads_dir(test_config: StudioConfig) -> Path:
    return test_config.uploads_dir


@pytest.fixture
def image_store(temp_dir: Path) -> ImageStore:
    return ImageStore(temp_dir / "images")


@pytest.fixture
def records() -> Generator[GenerationsDB, None, None]:
    """An open in-memory generation store."""
    db = GenerationsDB(":memory:").open()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def app(test_config: StudioConfig):
    return create_app(test_config)


@pytest.fixture
def test_client(app) -> Generator[TestClient, None, None]:
    """TestClient with the application lifespan (stores opened)."""
    with TestClient(app) as client:
        yield client


def _signup(client: TestClient, email: str) -> dict:
    resp = client.post("/auth/signup", json={"email": email, "password": "password123"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def auth_headers(test_client: TestClient) -> dict:
    """Authorization header for a freshly registered user."""
    return _signup(test_client, "artist@example.com")


@pytest.fixture
def other_auth_headers(test_client: TestClient) -> dict:
    """Authorization header for a second, unrelated user."""
    return _signup(test_client, "someone-else@example.com")


@pytest.fixture
def png_data_url() -> str:
    return make_data_url()


@pytest.fixture
def generation_payload(png_data_url: str) -> dict:
    """A valid ``POST /generations`` body."""
    return {"prompt": "A lighthouse at dusk", "style": "Classic", "imageUpload": png_data_url}
