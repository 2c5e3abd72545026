import os
import tempfile
from datetime import UTC, datetime, timedelta
from typing import Any

# Settings are read once at import; point them at test resources first.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("CHUNKED_UPLOAD_SWEEP_ENABLED", "false")
os.environ.setdefault(
    "CHUNKED_UPLOAD_TEMP_DIR", tempfile.mkdtemp(prefix="docrepo-test-chunks-")
)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docrepo.db import Base
from docrepo.models import Document  # noqa: F401
from docrepo.services.chunk_store import ChunkStore
from docrepo.services.chunked_upload import ChunkedUploadService
from docrepo.services.object_storage import S3StorageService
from docrepo.services.session_registry import SessionRegistry
from tests.mocks import FakeClock, FakeS3Client


class _JoseDateTimeProxy:
    def utcnow(self):
        return datetime.now(UTC)

    def now(self, tz: Any | None = None):
        return datetime.now(tz)

    def __getattr__(self, name: str) -> Any:
        return getattr(datetime, name)


@pytest.fixture(autouse=True)
def _patch_jose_datetime(monkeypatch):
    import jose.jwt as jose_jwt

    monkeypatch.setattr(jose_jwt, "datetime", _JoseDateTimeProxy(), raising=False)


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def fake_s3():
    return FakeS3Client()


@pytest.fixture()
def storage(fake_s3):
    return S3StorageService(
        "bucket", "http://minio:9000", "a", "b", "us-east-1", client=fake_s3
    )


@pytest.fixture()
def chunk_store(tmp_path):
    return ChunkStore(tmp_path / "chunks")


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=UTC))


@pytest.fixture()
def upload_service(chunk_store, storage, clock):
    """Service with a 1 KiB chunk size so multi-chunk files stay small."""
    return ChunkedUploadService(
        chunk_store=chunk_store,
        registry=SessionRegistry(),
        storage=storage,
        chunk_size=1024,
        session_ttl=timedelta(hours=24),
        max_file_size=10 * 1024 * 1024,
        clock=clock,
    )


@pytest.fixture()
def owner():
    return {"owner_id": "user-1", "owner_username": "alice", "roles": ["editor"]}
