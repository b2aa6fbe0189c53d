import asyncio
import subprocess
from pathlib import Path

import cv2
import jwt
import numpy as np
import pytest
from fastapi.testclient import TestClient

from registrar.core.config import get_settings
from registrar.core.db import Base, create_engine, create_session_factory, create_schema
from registrar.core.storage import LocalObjectStore
from registrar.main import create_app
from registrar.services.catalog import MediaCatalog
from registrar.services.ledger import IdentitySlotLedger


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default Registrar environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()
        return
    db_path = tmp_path / "registrar_test.db"
    media_root = tmp_path / "media"

    monkeypatch.setenv("REGISTRAR_ENV", "test")
    monkeypatch.setenv("REGISTRAR_LOG_LEVEL", "debug")
    monkeypatch.setenv("REGISTRAR_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("REGISTRAR_STORAGE_BACKEND", "local")
    monkeypatch.setenv("REGISTRAR_LOCAL_STORAGE_BASE_PATH", str(media_root))
    monkeypatch.setenv("REGISTRAR_CLASSIFIER_BACKEND", "static")
    monkeypatch.setenv("REGISTRAR_DISPATCH_COOLDOWN_S", "0")
    monkeypatch.setenv("REGISTRAR_RATE_LIMIT_BACKOFF_S", "0")
    monkeypatch.setenv("REGISTRAR_COMPLETED_PRUNE_DELAY_S", "60")
    monkeypatch.setenv("REGISTRAR_JWT_SECRET", "test-secret")
    monkeypatch.setenv("REGISTRAR_JWT_ISSUER", "registrar-test")
    monkeypatch.setenv("REGISTRAR_JWT_AUDIENCE", "registrar")
    for name in (
        "GOOGLE_API_KEY",
        "CLOUDINARY_CLOUD_NAME",
        "CLOUDINARY_API_KEY",
        "CLOUDINARY_API_SECRET",
        "REGISTRAR_VISION_API_KEY",
        "REGISTRAR_STORAGE_CLOUD_NAME",
        "REGISTRAR_STORAGE_API_KEY",
        "REGISTRAR_STORAGE_API_SECRET",
        "REGISTRAR_DEFAULT_AGENT",
    ):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    settings = get_settings()
    engine = create_engine(settings)

    asyncio.run(create_schema(engine))

    yield

    async def _teardown() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(_teardown())
    get_settings.cache_clear()


@pytest.fixture()
def settings(configure_environment):
    return get_settings()


@pytest.fixture()
def client(configure_environment):
    app = create_app()
    with TestClient(app) as client:
        yield client


def build_token(*, scopes: list[str] | None = None, user_id: str | None = None) -> str:
    payload: dict[str, object] = {"iss": "registrar-test", "aud": "registrar"}
    if scopes:
        payload["scopes"] = scopes
    if user_id:
        payload["sub"] = user_id
    return jwt.encode(payload, "test-secret", algorithm="HS256")


@pytest.fixture()
def studio_headers() -> dict[str, str]:
    token = build_token(scopes=["studio"], user_id="curator-1")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def viewer_headers() -> dict[str, str]:
    token = build_token(scopes=["viewer"])
    return {"Authorization": f"Bearer {token}"}


class Services:
    """Catalog and ledger over a throwaway SQLite file, for tests driving them with ``asyncio.run``."""

    def __init__(self, settings):
        self.settings = settings
        self.store = LocalObjectStore(base_path=Path(settings.local_storage_base_path), base_url="http://testserver/media")

    def run(self, factory):
        """Run ``factory(catalog, ledger)`` on a fresh engine inside one event loop."""

        async def _runner():
            engine = create_engine(self.settings)
            try:
                session_factory = create_session_factory(engine)
                catalog = MediaCatalog(session_factory)
                ledger = IdentitySlotLedger(session_factory, self.settings.known_agents)
                return await factory(catalog, ledger)
            finally:
                await engine.dispose()

        return asyncio.run(_runner())


@pytest.fixture()
def services(settings) -> Services:
    return Services(settings)


def encode_png(width: int = 32, height: int = 24, colour: tuple[int, int, int] = (40, 80, 120)) -> bytes:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:] = colour
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture()
def png_bytes() -> bytes:
    return encode_png()


@pytest.fixture(scope="session")
def generated_video_file(tmp_path_factory) -> Path:
    """
    Generates a small, valid MP4 video file for testing in a temporary directory.
    """
    video_path = tmp_path_factory.mktemp("data") / "test_video.mp4"

    # Generate a 1-second video with a solid color
    command = [
        "ffmpeg",
        "-f", "lavfi",
        "-i", "color=c=black:s=128x72:r=30",
        "-t", "1",
        "-pix_fmt", "yuv420p",
        str(video_path)
    ]
    subprocess.run(command, check=True, capture_output=True)
    return video_path
