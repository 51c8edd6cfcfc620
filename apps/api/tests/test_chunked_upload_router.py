import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select
from unittest.mock import AsyncMock

from database import Base, get_db
from main import app
from models.chunked_upload import ChunkedUpload, UploadChunk
from services.session_token import create_session_token
from services.storage import LocalObjectStorage, StorageError, get_storage


UPLOAD_USER_ID = "upload-user"
UPLOAD_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(UPLOAD_USER_ID, 'upload@example.com')['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('other-user')['token']}"}


@pytest_asyncio.fixture
async def upload_client(tmp_path):
    db_path = tmp_path / "chunked_upload.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    storage = LocalObjectStorage(str(tmp_path / "storage"))

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, storage

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_storage, None)
    await engine.dispose()


async def _init(client, file_size=10, chunk_size=4, headers=UPLOAD_AUTH_HEADER, file_name="subjects.csv"):
    response = await client.post(
        "/uploads/init",
        json={"fileName": file_name, "fileSize": file_size, "chunkSize": chunk_size, "mimeType": "text/csv"},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


async def _send(client, upload_id, index, data, headers=UPLOAD_AUTH_HEADER):
    return await client.post(
        "/uploads/chunk",
        data={"uploadId": upload_id, "chunkIndex": str(index)},
        files={"chunk": (f"chunk_{index}", data, "application/octet-stream")},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_init_derives_chunk_count(upload_client):
    client, _, _ = upload_client
    payload = await _init(client, file_size=10, chunk_size=4)
    assert payload["uploadId"]
    assert payload["totalChunks"] == 3
    assert payload["chunkSize"] == 4
    assert payload["storagePrefix"].startswith(f"dataset_raw/{UPLOAD_USER_ID}/")
    assert payload["storagePrefix"].endswith("_subjects.csv")


@pytest.mark.asyncio
async def test_init_rejects_missing_fields_and_oversized_chunks(upload_client):
    client, _, _ = upload_client
    missing = await client.post("/uploads/init", json={"fileName": "a.csv"}, headers=UPLOAD_AUTH_HEADER)
    assert missing.status_code == 422

    too_big = await client.post(
        "/uploads/init",
        json={"fileName": "a.csv", "fileSize": 100, "chunkSize": 1024 * 1024 * 1024},
        headers=UPLOAD_AUTH_HEADER,
    )
    assert too_big.status_code == 422


@pytest.mark.asyncio
@pytest.mark.parametrize("file_name", ["chunk_00000", "dir/chunk_00042", "chunk_123456"])
async def test_init_rejects_names_that_collide_with_chunk_objects(upload_client, file_name):
    client, _, _ = upload_client
    response = await client.post(
        "/uploads/init",
        json={"fileName": file_name, "fileSize": 10, "chunkSize": 4},
        headers=UPLOAD_AUTH_HEADER,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_assembled_file_named_like_a_chunk_prefix_keeps_chunks_intact(upload_client):
    client, _, storage = upload_client
    upload_id = (await _init(client, file_size=3, chunk_size=4, file_name="chunk_0.csv"))["uploadId"]
    await _send(client, upload_id, 0, b"abc")

    assembled = await client.post(f"/uploads/{upload_id}/assemble", headers=UPLOAD_AUTH_HEADER)
    assert assembled.status_code == 200
    assert assembled.json()["storagePath"].endswith("/chunk_0.csv")
    status = await client.get("/uploads/status", params={"uploadId": upload_id}, headers=UPLOAD_AUTH_HEADER)
    chunk_path = status.json()["upload"]["chunks"][0]["storagePath"]
    assert chunk_path != assembled.json()["storagePath"]
    assert await storage.read("dataset-uploads", chunk_path) == b"abc"


@pytest.mark.asyncio
async def test_requests_without_token_are_unauthorized(upload_client):
    client, _, _ = upload_client
    response = await client.post("/uploads/init", json={"fileName": "a.csv", "fileSize": 10})
    assert response.status_code == 401
    response = await client.get("/uploads/status", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_out_of_order_chunks_complete_and_retrieve_in_index_order(upload_client):
    client, session_maker, _ = upload_client
    upload_id = (await _init(client))["uploadId"]

    first = await _send(client, upload_id, 2, b"89")
    assert first.status_code == 200
    assert first.json() == {"success": True, "chunkIndex": 2, "chunksUploaded": 1, "totalChunks": 3, "isComplete": False}
    assert (await _send(client, upload_id, 0, b"0123")).json()["isComplete"] is False
    last = await _send(client, upload_id, 1, b"4567")
    assert last.json()["isComplete"] is True
    assert last.json()["chunksUploaded"] == 3

    async with session_maker() as session:
        upload = (await session.execute(select(ChunkedUpload).where(ChunkedUpload.id == upload_id))).scalar_one()
        assert upload.status == "complete"
        assert upload.completed_at is not None

    retrieved = await client.get("/uploads/retrieve", params={"uploadId": upload_id}, headers=UPLOAD_AUTH_HEADER)
    assert retrieved.status_code == 200
    assert retrieved.content == b"0123456789"
    assert retrieved.headers["content-type"].startswith("text/csv")
    assert 'filename="subjects.csv"' in retrieved.headers["content-disposition"]


@pytest.mark.asyncio
async def test_resent_chunk_is_idempotent_and_overwrites(upload_client):
    client, session_maker, _ = upload_client
    upload_id = (await _init(client))["uploadId"]

    await _send(client, upload_id, 0, b"xxxx")
    again = await _send(client, upload_id, 0, b"0123")
    assert again.json()["chunksUploaded"] == 1

    async with session_maker() as session:
        rows = (await session.execute(select(UploadChunk).where(UploadChunk.upload_id == upload_id))).scalars().all()
    assert len(rows) == 1
    assert rows[0].size == 4

    await _send(client, upload_id, 1, b"4567")
    await _send(client, upload_id, 2, b"89")
    retrieved = await client.get("/uploads/retrieve", params={"uploadId": upload_id}, headers=UPLOAD_AUTH_HEADER)
    assert retrieved.content == b"0123456789"


@pytest.mark.asyncio
async def test_chunk_validation_errors(upload_client):
    client, _, _ = upload_client
    upload_id = (await _init(client))["uploadId"]

    assert (await _send(client, upload_id, 3, b"zz")).status_code == 422
    assert (await _send(client, upload_id, -1, b"zz")).status_code == 422
    assert (await _send(client, "missing-upload", 0, b"zz")).status_code == 404
    assert (await _send(client, upload_id, 0, b"zz", headers=OTHER_AUTH_HEADER)).status_code == 404


@pytest.mark.asyncio
async def test_chunk_after_completion_conflicts(upload_client):
    client, _, _ = upload_client
    upload_id = (await _init(client, file_size=3, chunk_size=4))["uploadId"]
    assert (await _send(client, upload_id, 0, b"abc")).json()["isComplete"] is True

    response = await _send(client, upload_id, 0, b"abc")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_retrieve_requires_completed_owned_upload(upload_client):
    client, _, _ = upload_client
    upload_id = (await _init(client))["uploadId"]
    await _send(client, upload_id, 0, b"0123")

    pending = await client.get("/uploads/retrieve", params={"uploadId": upload_id}, headers=UPLOAD_AUTH_HEADER)
    assert pending.status_code == 404

    await _send(client, upload_id, 1, b"4567")
    await _send(client, upload_id, 2, b"89")
    foreign = await client.get("/uploads/retrieve", params={"uploadId": upload_id}, headers=OTHER_AUTH_HEADER)
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_storage_failure_surfaces_as_retryable(upload_client):
    client, _, _ = upload_client
    upload_id = (await _init(client))["uploadId"]

    failing = LocalObjectStorage("/unused")
    failing.write = AsyncMock(side_effect=StorageError("disk full"))
    app.dependency_overrides[get_storage] = lambda: failing

    response = await _send(client, upload_id, 0, b"0123")
    assert response.status_code == 503

    status = await client.get("/uploads/status", params={"uploadId": upload_id}, headers=UPLOAD_AUTH_HEADER)
    assert status.json()["upload"]["chunksUploaded"] == 0
    assert status.json()["upload"]["chunks"] == []


@pytest.mark.asyncio
async def test_status_lists_sessions_and_details_one(upload_client):
    client, _, _ = upload_client
    first = (await _init(client, file_name="first.csv"))["uploadId"]
    second = (await _init(client, file_name="second.csv"))["uploadId"]
    await _init(client, headers=OTHER_AUTH_HEADER)
    await _send(client, first, 1, b"4567")

    listing = await client.get("/uploads/status", headers=UPLOAD_AUTH_HEADER)
    assert listing.status_code == 200
    assert {item["uploadId"] for item in listing.json()["uploads"]} == {first, second}

    detail = await client.get("/uploads/status", params={"uploadId": first}, headers=UPLOAD_AUTH_HEADER)
    upload = detail.json()["upload"]
    assert upload["status"] == "uploading"
    assert upload["chunksUploaded"] == 1
    assert [chunk["chunkIndex"] for chunk in upload["chunks"]] == [1]


@pytest.mark.asyncio
async def test_assemble_and_delete_upload(upload_client):
    client, session_maker, storage = upload_client
    upload_id = (await _init(client, file_size=3, chunk_size=4))["uploadId"]
    await _send(client, upload_id, 0, b"abc")

    assembled = await client.post(f"/uploads/{upload_id}/assemble", headers=UPLOAD_AUTH_HEADER)
    assert assembled.status_code == 200
    assert assembled.json()["size"] == 3
    assert await storage.read("dataset-uploads", assembled.json()["storagePath"]) == b"abc"

    deleted = await client.delete(f"/uploads/{upload_id}", headers=UPLOAD_AUTH_HEADER)
    assert deleted.status_code == 200
    assert not await storage.exists("dataset-uploads", assembled.json()["storagePath"])

    async with session_maker() as session:
        remaining = (await session.execute(select(UploadChunk).where(UploadChunk.upload_id == upload_id))).scalars().all()
    assert remaining == []
    missing = await client.get("/uploads/status", params={"uploadId": upload_id}, headers=UPLOAD_AUTH_HEADER)
    assert missing.status_code == 404
