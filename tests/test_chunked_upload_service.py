import hashlib
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from docrepo.models.document import Document
from docrepo.schemas.chunked_upload import (
    ChunkedUploadCompleteRequest,
    ChunkedUploadInitRequest,
)
from docrepo.services.chunk_store import ChunkStore, ChunkStoreError
from docrepo.services.chunked_upload import ChunkedUploadService
from docrepo.services.chunked_upload_errors import (
    InvalidChunkError,
    UploadConflictError,
    UploadExpiredError,
    UploadIncompleteError,
    UploadNotFoundError,
    UploadStorageError,
)
from docrepo.services.object_storage import ObjectStorageError
from docrepo.services.session_registry import SessionRegistry
from docrepo.services.upload_sessions import AssemblyStarted, apply


def _payload(file_size, **kwargs):
    values = {
        "filename": "report.pdf",
        "content_type": "application/pdf",
        "file_size": file_size,
    }
    values.update(kwargs)
    return ChunkedUploadInitRequest(**values)


def _data(size):
    return (bytes(range(256)) * (size // 256 + 1))[:size]


def _init(service, owner, file_size, **kwargs):
    return service.init_upload(
        _payload(file_size, **kwargs), owner["owner_id"], owner["owner_username"]
    )


def _upload_all(service, upload_id, data, chunk_size, order=None):
    total = (len(data) + chunk_size - 1) // chunk_size
    for index in order if order is not None else range(total):
        start = index * chunk_size
        service.upload_chunk(upload_id, index, data[start : start + chunk_size])


def test_init_allocates_directory_and_session(upload_service, owner, clock):
    response = _init(upload_service, owner, 2500)
    assert response.total_chunks == 3
    assert response.chunk_size == 1024
    assert response.expires_at == clock.current + timedelta(hours=24)
    assert upload_service.chunk_store.exists(response.upload_id)

    status = upload_service.get_status(response.upload_id)
    assert status.status == "INITIALIZED"
    assert status.missing_chunks == [0, 1, 2]
    assert status.progress_percent == 0.0


def test_init_rejects_oversized_file(upload_service, owner):
    with pytest.raises(InvalidChunkError):
        _init(upload_service, owner, 10 * 1024 * 1024 + 1)
    assert len(upload_service.registry) == 0


def test_init_directory_failure_registers_nothing(upload_service, owner, monkeypatch):
    def _fail(upload_id):
        raise ChunkStoreError("disk full")

    monkeypatch.setattr(upload_service.chunk_store, "allocate", _fail)
    with pytest.raises(UploadStorageError):
        _init(upload_service, owner, 100)
    assert len(upload_service.registry) == 0


def test_three_chunk_out_of_order_upload(tmp_path, storage, fake_s3, owner, db_session):
    chunk_size = 10 * 1024 * 1024
    service = ChunkedUploadService(
        chunk_store=ChunkStore(tmp_path / "large"),
        registry=SessionRegistry(),
        storage=storage,
        chunk_size=chunk_size,
    )
    data = _data(25_000_000)
    init = _init(service, owner, len(data))
    assert init.total_chunks == 3

    service.upload_chunk(init.upload_id, 2, data[2 * chunk_size :])
    response = service.upload_chunk(init.upload_id, 0, data[:chunk_size])
    assert response.completed_chunks == 2
    assert response.uploaded_chunks == [0, 2]
    assert response.progress_percent == pytest.approx(200 / 3)

    status = service.get_status(init.upload_id)
    assert status.status == "IN_PROGRESS"
    assert status.missing_chunks == [1]

    service.upload_chunk(init.upload_id, 1, data[chunk_size : 2 * chunk_size])
    assert service.get_status(init.upload_id).status == "COMPLETE"

    document = service.complete_upload(db_session, init.upload_id)
    assert document.size == 25_000_000
    stored = fake_s3.objects[db_session.get(Document, document.id).storage_key]
    assert hashlib.sha256(stored).digest() == hashlib.sha256(data).digest()


def test_single_chunk_round_trip(upload_service, owner, db_session, fake_s3):
    data = os.urandom(1024)
    init = _init(
        upload_service, owner, 1024, tags=["finance"], description="from init"
    )
    assert init.total_chunks == 1

    upload_service.upload_chunk(init.upload_id, 0, data)
    document = upload_service.complete_upload(db_session, init.upload_id)

    assert document.filename == "report.pdf"
    assert document.content_type == "application/pdf"
    assert document.owner_id == "user-1"
    assert document.owner_username == "alice"
    assert document.tags == ["finance"]
    assert document.description == "from init"
    record = db_session.get(Document, document.id)
    assert fake_s3.objects[record.storage_key] == data
    assert fake_s3.content_types[record.storage_key] == "application/pdf"
    assert record.storage_key.endswith(".pdf")

    assert not upload_service.chunk_store.exists(init.upload_id)
    with pytest.raises(UploadNotFoundError):
        upload_service.get_status(init.upload_id)
    with pytest.raises(UploadNotFoundError):
        upload_service.upload_chunk(init.upload_id, 0, data)
    with pytest.raises(UploadNotFoundError):
        upload_service.complete_upload(db_session, init.upload_id)
    assert not upload_service.chunk_store.exists(init.upload_id)


def test_complete_overrides_take_precedence(upload_service, owner, db_session):
    init = _init(upload_service, owner, 10, tags=["old"], description="keep me")
    upload_service.upload_chunk(init.upload_id, 0, b"0123456789")

    document = upload_service.complete_upload(
        db_session, init.upload_id, ChunkedUploadCompleteRequest(tags=["new", "tags"])
    )
    assert document.tags == ["new", "tags"]
    assert document.description == "keep me"


def test_complete_incomplete_lists_missing(upload_service, owner, db_session):
    data = _data(2500)
    init = _init(upload_service, owner, len(data))
    _upload_all(upload_service, init.upload_id, data, 1024, order=[0, 1])

    with pytest.raises(UploadIncompleteError) as exc:
        upload_service.complete_upload(db_session, init.upload_id)
    assert exc.value.missing_chunks == {2}
    assert exc.value.to_detail()["details"] == {"missing_chunks": [2]}
    assert upload_service.get_status(init.upload_id).completed_chunks == 2


@pytest.mark.parametrize("index", [3, 100, -1])
def test_invalid_chunk_index(upload_service, owner, index):
    init = _init(upload_service, owner, 2500)
    with pytest.raises(InvalidChunkError):
        upload_service.upload_chunk(init.upload_id, index, b"x")
    assert upload_service.get_status(init.upload_id).completed_chunks == 0


def test_chunk_length_must_match(upload_service, owner):
    init = _init(upload_service, owner, 2500)
    with pytest.raises(InvalidChunkError):
        upload_service.upload_chunk(init.upload_id, 0, b"x" * 1000)
    with pytest.raises(InvalidChunkError):
        upload_service.upload_chunk(init.upload_id, 2, b"x" * 1024)
    upload_service.upload_chunk(init.upload_id, 2, b"x" * (2500 - 2048))
    assert upload_service.get_status(init.upload_id).uploaded_chunks == [2]


def test_chunk_checksum(upload_service, owner):
    init = _init(upload_service, owner, 4)
    with pytest.raises(InvalidChunkError):
        upload_service.upload_chunk(init.upload_id, 0, b"data", checksum="00" * 32)
    assert upload_service.get_status(init.upload_id).completed_chunks == 0

    checksum = hashlib.sha256(b"data").hexdigest()
    response = upload_service.upload_chunk(init.upload_id, 0, b"data", checksum=checksum)
    assert response.completed_chunks == 1


def test_reupload_overwrites_without_double_counting(
    upload_service, owner, db_session, fake_s3
):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"aaaa")
    response = upload_service.upload_chunk(init.upload_id, 0, b"bbbb")
    assert response.completed_chunks == 1

    document = upload_service.complete_upload(db_session, init.upload_id)
    record = db_session.get(Document, document.id)
    assert fake_s3.objects[record.storage_key] == b"bbbb"


def test_unknown_upload_id(upload_service, db_session):
    with pytest.raises(UploadNotFoundError):
        upload_service.upload_chunk("missing", 0, b"x")
    with pytest.raises(UploadNotFoundError):
        upload_service.get_status("missing")
    with pytest.raises(UploadNotFoundError):
        upload_service.complete_upload(db_session, "missing")
    with pytest.raises(UploadNotFoundError):
        upload_service.cancel_upload("missing")


def test_expired_session(upload_service, owner, clock, db_session):
    init = _init(upload_service, owner, 2500)
    upload_service.upload_chunk(init.upload_id, 0, b"x" * 1024)
    clock.advance(hours=24, seconds=1)

    assert upload_service.get_status(init.upload_id).status == "EXPIRED"
    assert upload_service.chunk_store.exists(init.upload_id)

    with pytest.raises(UploadExpiredError):
        upload_service.upload_chunk(init.upload_id, 1, b"x" * 1024)
    assert not upload_service.chunk_store.exists(init.upload_id)
    with pytest.raises(UploadNotFoundError):
        upload_service.get_status(init.upload_id)


def test_expired_session_cannot_complete(upload_service, owner, clock, db_session):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"done")
    clock.advance(days=2)

    with pytest.raises(UploadExpiredError):
        upload_service.complete_upload(db_session, init.upload_id)
    assert db_session.query(Document).count() == 0


def test_cancel_removes_session_and_chunks(upload_service, owner):
    init = _init(upload_service, owner, 2500)
    upload_service.upload_chunk(init.upload_id, 0, b"x" * 1024)

    upload_service.cancel_upload(init.upload_id)
    assert not upload_service.chunk_store.exists(init.upload_id)
    with pytest.raises(UploadNotFoundError):
        upload_service.get_status(init.upload_id)
    with pytest.raises(UploadNotFoundError):
        upload_service.upload_chunk(init.upload_id, 1, b"x" * 1024)


def test_concurrent_chunks_all_recorded(upload_service, owner):
    data = _data(1024 * 40)
    init = _init(upload_service, owner, len(data))

    def _send(index):
        return upload_service.upload_chunk(
            init.upload_id, index, data[index * 1024 : (index + 1) * 1024]
        )

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_send, range(40)))

    status = upload_service.get_status(init.upload_id)
    assert status.completed_chunks == 40
    assert status.status == "COMPLETE"


def test_completion_in_progress_conflicts(upload_service, owner, db_session):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    upload_service.registry.update(init.upload_id, lambda s: apply(s, AssemblyStarted()))

    with pytest.raises(UploadConflictError):
        upload_service.complete_upload(db_session, init.upload_id)
    with pytest.raises(UploadConflictError):
        upload_service.upload_chunk(init.upload_id, 0, b"abcd")


def test_cancel_while_completing_conflicts(upload_service, owner):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    upload_service.registry.update(init.upload_id, lambda s: apply(s, AssemblyStarted()))

    with pytest.raises(UploadConflictError):
        upload_service.cancel_upload(init.upload_id)
    assert init.upload_id in upload_service.registry
    assert upload_service.chunk_store.exists(init.upload_id)


def test_cancel_racing_completion_keeps_one_outcome(
    upload_service, owner, db_session, monkeypatch
):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    original_put = upload_service.storage.put
    outcome = {}

    def _put_then_cancel(*args, **kwargs):
        key = original_put(*args, **kwargs)
        try:
            upload_service.cancel_upload(init.upload_id)
        except UploadConflictError as exc:
            outcome["cancel"] = exc
        return key

    monkeypatch.setattr(upload_service.storage, "put", _put_then_cancel)
    document = upload_service.complete_upload(db_session, init.upload_id)

    assert isinstance(outcome.get("cancel"), UploadConflictError)
    assert document.size == 4
    assert db_session.query(Document).count() == 1
    assert init.upload_id not in upload_service.registry
    assert not upload_service.chunk_store.exists(init.upload_id)


def test_expiry_leaves_session_being_completed(upload_service, owner, clock, db_session):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    upload_service.registry.update(init.upload_id, lambda s: apply(s, AssemblyStarted()))
    clock.advance(days=2)

    with pytest.raises(UploadConflictError):
        upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    with pytest.raises(UploadConflictError):
        upload_service.complete_upload(db_session, init.upload_id)
    assert init.upload_id in upload_service.registry
    assert upload_service.chunk_store.exists(init.upload_id)


def test_completion_stops_when_session_vanishes(
    upload_service, owner, db_session, fake_s3, monkeypatch, caplog
):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    original_put = upload_service.storage.put

    def _put_then_drop(*args, **kwargs):
        key = original_put(*args, **kwargs)
        upload_service.registry.remove(init.upload_id)
        return key

    monkeypatch.setattr(upload_service.storage, "put", _put_then_drop)
    with caplog.at_level("ERROR"):
        with pytest.raises(UploadNotFoundError):
            upload_service.complete_upload(db_session, init.upload_id)

    assert "chunked_upload_orphaned_object" in caplog.text
    assert len(fake_s3.objects) == 1
    assert db_session.query(Document).count() == 0
    assert not upload_service.chunk_store.exists(init.upload_id)


def test_chunk_rejected_when_claimed_during_write(upload_service, owner, monkeypatch):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"aaaa")
    store = upload_service.chunk_store
    original_stage = store.stage_chunk

    def _stage_then_claim(*args, **kwargs):
        staged = original_stage(*args, **kwargs)
        upload_service.registry.update(
            init.upload_id, lambda s: apply(s, AssemblyStarted())
        )
        return staged

    monkeypatch.setattr(store, "stage_chunk", _stage_then_claim)
    with pytest.raises(UploadConflictError):
        upload_service.upload_chunk(init.upload_id, 0, b"bbbb")

    assert store.chunk_path(init.upload_id, 0).read_bytes() == b"aaaa"
    assert os.listdir(store.upload_dir(init.upload_id)) == ["chunk-0"]


def test_chunk_commit_failure_leaves_session_unmarked(upload_service, owner, monkeypatch):
    init = _init(upload_service, owner, 2048)

    def _fail(staged):
        raise ChunkStoreError("rename failed")

    monkeypatch.setattr(upload_service.chunk_store, "commit_chunk", _fail)
    with pytest.raises(UploadStorageError):
        upload_service.upload_chunk(init.upload_id, 0, b"x" * 1024)
    assert upload_service.get_status(init.upload_id).completed_chunks == 0


def test_storage_failure_keeps_session_for_retry(
    upload_service, owner, db_session, monkeypatch
):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")

    original_put = upload_service.storage.put

    def _failing_put(*args, **kwargs):
        raise ObjectStorageError("bucket unavailable")

    monkeypatch.setattr(upload_service.storage, "put", _failing_put)
    with pytest.raises(UploadStorageError):
        upload_service.complete_upload(db_session, init.upload_id)

    status = upload_service.get_status(init.upload_id)
    assert status.status == "COMPLETE"
    assert upload_service.registry.get(init.upload_id).assembling is False
    assert upload_service.chunk_store.exists(init.upload_id)

    monkeypatch.setattr(upload_service.storage, "put", original_put)
    document = upload_service.complete_upload(db_session, init.upload_id)
    assert document.size == 4


def test_missing_chunk_file_on_disk_fails_complete(upload_service, owner, db_session):
    init = _init(upload_service, owner, 2048)
    _upload_all(upload_service, init.upload_id, _data(2048), 1024)
    upload_service.chunk_store.chunk_path(init.upload_id, 1).unlink()

    with pytest.raises(UploadStorageError):
        upload_service.complete_upload(db_session, init.upload_id)
    assert upload_service.registry.get(init.upload_id).assembling is False


def test_metadata_failure_tears_down_and_logs_orphan(
    upload_service, owner, db_session, fake_s3, caplog
):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    upload_service.metadata = MagicMock()
    upload_service.metadata.create.side_effect = RuntimeError("db down")

    with caplog.at_level("ERROR"):
        with pytest.raises(UploadStorageError):
            upload_service.complete_upload(db_session, init.upload_id)

    assert "chunked_upload_orphaned_object" in caplog.text
    assert len(fake_s3.objects) == 1
    assert init.upload_id not in upload_service.registry
    assert not upload_service.chunk_store.exists(init.upload_id)


def test_sweep_removes_expired_sessions(upload_service, owner, clock):
    stale = _init(upload_service, owner, 4)
    clock.advance(hours=23)
    fresh = _init(upload_service, owner, 4)
    clock.advance(hours=2)

    result = upload_service.sweep_expired()
    assert result == {"expired": 1, "orphaned": 0, "failed": 0}
    assert stale.upload_id not in upload_service.registry
    assert not upload_service.chunk_store.exists(stale.upload_id)
    assert fresh.upload_id in upload_service.registry

    assert upload_service.sweep_expired()["expired"] == 0


def test_sweep_skips_sessions_being_assembled(upload_service, owner, clock):
    init = _init(upload_service, owner, 4)
    upload_service.upload_chunk(init.upload_id, 0, b"abcd")
    upload_service.registry.update(init.upload_id, lambda s: apply(s, AssemblyStarted()))
    clock.advance(days=2)

    assert upload_service.sweep_expired()["expired"] == 0
    assert init.upload_id in upload_service.registry


def test_sweep_removes_stale_orphan_directories(upload_service, clock):
    store = upload_service.chunk_store
    store.allocate("left-over")
    store.allocate("recent")
    old = clock.current.timestamp() - timedelta(hours=25).total_seconds()
    os.utime(store.upload_dir("left-over"), (old, old))
    recent = clock.current.timestamp() - 60
    os.utime(store.upload_dir("recent"), (recent, recent))

    result = upload_service.sweep_expired()
    assert result["orphaned"] == 1
    assert not store.exists("left-over")
    assert store.exists("recent")
