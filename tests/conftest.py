# tests/conftest.py
"""
Pytest configuration and fixtures.
"""

import io
import json
import os
import tempfile

import httpx
import pytest

# Set test environment before any news_ingest import reads it
os.environ.setdefault("TESTING", "1")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("STORAGE_PROVIDER", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="news-ingest-test-"))
os.environ.setdefault("LOG_JSON", "false")

from news_ingest.context import PipelineContext  # noqa: E402
from news_ingest.database import Base, build_engine, build_session_factory, init_db  # noqa: E402


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads each get a real connection."""
    engine = build_engine(f"sqlite:///{tmp_path / 'news.db'}")
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ctx():
    """Fresh run context (own metrics, own cancel token)."""
    return PipelineContext.create("tests")


# -----------------------------------------------------------------------------
# Upstream payloads
# -----------------------------------------------------------------------------


def make_raw_item(n: int, **overrides) -> dict:
    """A valid upstream item as the API sends it."""
    item = {
        "id": str(n),
        "source_guid": f"guid-{n}",
        "title": f"Piyasalarda gün {n}",
        "seo_title": f"Piyasalarda gün {n}",
        "seo_description": f"Borsa İstanbul günü {n}. kez yükselişle kapattı.",
        "content_md": "Borsa İstanbul günü yükselişle kapattı. " * 10,
        "original_url": f"https://www.dunya.com/sirketler/haber-{n}",
        "category": "sirketler",
        "tags": ["Borsa", "ekonomi"],
        "tldr": ["Endeks yükseldi"],
        "published_at": "2024-05-01T09:30:00Z",
    }
    item.update(overrides)
    return item


@pytest.fixture
def raw_item():
    return make_raw_item


class FakeUpstream:
    """
    In-memory upstream API served through httpx.MockTransport.

    Serves `items` for list requests honouring limit/offset and records
    every request it sees.
    """

    def __init__(self, items: list[dict]):
        self.items = items
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            return httpx.Response(200)

        limit = int(request.url.params.get("limit", 50))
        offset = int(request.url.params.get("offset", 0))
        chunk = self.items[offset:offset + limit]
        body = {
            "items": chunk,
            "total": len(self.items),
            "page": offset // limit + 1,
            "limit": limit,
            "has_more": offset + limit < len(self.items),
        }
        return httpx.Response(200, content=json.dumps(body), headers={"content-type": "application/json"})

    @property
    def list_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_upstream():
    return FakeUpstream


# -----------------------------------------------------------------------------
# Images
# -----------------------------------------------------------------------------


def make_image_bytes(width: int = 1600, height: int = 900, fmt: str = "PNG", color=(200, 30, 30)) -> bytes:
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    return make_image_bytes()


@pytest.fixture
def make_image():
    return make_image_bytes
