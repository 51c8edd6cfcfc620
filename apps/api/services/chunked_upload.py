"""Resumable chunked upload sessions.

Clients create a session, send numbered chunks in any order (retries and
duplicates included), and the session completes once every index has been
stored. Completion is derived from the number of distinct stored chunk
indexes, never from a client-supplied counter.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import delete, distinct, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.chunked_upload import ChunkedUpload, UploadChunk
from models.reference_profile import ReferenceProfile
from services.storage import LocalObjectStorage, StorageError

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
# Chunk objects and the assembled file share one prefix.
CHUNK_NAME_PATTERN = re.compile(r"chunk_\d{5,}")


def _safe_filename(filename: str) -> str:
    base = os.path.basename(filename or "dataset.csv")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe.lstrip(".") or "dataset.csv"


def build_storage_prefix(user_id: str, file_name: str, now_ms: Optional[int] = None) -> str:
    stamp = int(now_ms if now_ms is not None else time.time() * 1000)
    return f"{settings.UPLOAD_STORAGE_NAMESPACE}/{user_id}/{stamp}_{file_name}"


def chunk_storage_path(storage_prefix: str, chunk_index: int) -> str:
    return f"{storage_prefix}/chunk_{chunk_index:05d}"


def assembled_storage_path(upload: ChunkedUpload) -> str:
    return f"{upload.storage_prefix}/{upload.file_name}"


def serialize_chunk(chunk: UploadChunk) -> Dict[str, Any]:
    return {
        "chunk_index": chunk.chunk_index,
        "storage_path": chunk.storage_path,
        "size": chunk.size,
        "checksum": chunk.checksum,
        "uploaded_at": chunk.uploaded_at.isoformat() if chunk.uploaded_at else None,
    }


def serialize_upload(upload: ChunkedUpload, chunks: Optional[List[UploadChunk]] = None) -> Dict[str, Any]:
    payload = {
        "upload_id": upload.id,
        "file_name": upload.file_name,
        "original_size": upload.original_size,
        "chunk_size": upload.chunk_size,
        "total_chunks": upload.total_chunks,
        "chunks_uploaded": upload.chunks_uploaded,
        "status": upload.status,
        "storage_prefix": upload.storage_prefix,
        "mime_type": upload.mime_type,
        "metadata": upload.metadata_json or {},
        "created_at": upload.created_at.isoformat() if upload.created_at else None,
        "completed_at": upload.completed_at.isoformat() if upload.completed_at else None,
    }
    if chunks is not None:
        payload["chunks"] = [serialize_chunk(chunk) for chunk in chunks]
    return payload


async def _get_owned_upload(db: AsyncSession, user_id: str, upload_id: str) -> Optional[ChunkedUpload]:
    result = await db.execute(
        select(ChunkedUpload).where(
            ChunkedUpload.id == upload_id,
            ChunkedUpload.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def _get_chunk(db: AsyncSession, upload_id: str, chunk_index: int) -> Optional[UploadChunk]:
    result = await db.execute(
        select(UploadChunk).where(
            UploadChunk.upload_id == upload_id,
            UploadChunk.chunk_index == chunk_index,
        )
    )
    return result.scalar_one_or_none()


async def list_upload_chunks(db: AsyncSession, upload_id: str) -> List[UploadChunk]:
    result = await db.execute(
        select(UploadChunk)
        .where(UploadChunk.upload_id == upload_id)
        .order_by(UploadChunk.chunk_index.asc())
    )
    return list(result.scalars().all())


async def count_stored_chunks(db: AsyncSession, upload_id: str) -> int:
    result = await db.execute(
        select(func.count(distinct(UploadChunk.chunk_index))).where(UploadChunk.upload_id == upload_id)
    )
    return int(result.scalar() or 0)


async def init_upload_service(
    *,
    user_id: str,
    file_name: Optional[str],
    file_size: Optional[int],
    db: AsyncSession,
    mime_type: Optional[str] = None,
    chunk_size: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create an upload session in ``uploading`` status."""
    if not file_name or not file_size:
        raise HTTPException(status_code=422, detail="fileName and fileSize are required")
    if int(file_size) < 0:
        raise HTTPException(status_code=422, detail="fileSize must be positive")

    effective_chunk_size = int(chunk_size or settings.UPLOAD_DEFAULT_CHUNK_SIZE)
    if effective_chunk_size <= 0:
        raise HTTPException(status_code=422, detail="chunkSize must be positive")
    if effective_chunk_size > settings.UPLOAD_MAX_CHUNK_BYTES:
        raise HTTPException(
            status_code=422,
            detail=f"chunkSize cannot exceed {settings.UPLOAD_MAX_CHUNK_BYTES} bytes",
        )

    safe_name = _safe_filename(file_name)
    if CHUNK_NAME_PATTERN.fullmatch(safe_name):
        raise HTTPException(status_code=422, detail="fileName is reserved for chunk storage")
    total_chunks = math.ceil(int(file_size) / effective_chunk_size)
    storage_prefix = build_storage_prefix(user_id, safe_name)

    upload = ChunkedUpload(
        user_id=user_id,
        file_name=safe_name,
        original_size=int(file_size),
        chunk_size=effective_chunk_size,
        total_chunks=total_chunks,
        chunks_uploaded=0,
        status="uploading",
        bucket_name=settings.STORAGE_BUCKET,
        storage_prefix=storage_prefix,
        mime_type=mime_type or DEFAULT_MIME_TYPE,
        metadata_json=metadata or {},
    )
    db.add(upload)
    await db.commit()

    logger.info(
        "Upload init: %s, size: %s, chunks: %s, prefix: %s",
        safe_name,
        file_size,
        total_chunks,
        storage_prefix,
    )
    return {
        "upload_id": upload.id,
        "total_chunks": total_chunks,
        "chunk_size": effective_chunk_size,
        "storage_prefix": storage_prefix,
    }


async def _record_chunk(
    db: AsyncSession,
    *,
    upload_id: str,
    chunk_index: int,
    storage_path: str,
    size: int,
    checksum: str,
) -> None:
    """Insert or overwrite the metadata row for (upload, index)."""
    existing = await _get_chunk(db, upload_id, chunk_index)
    if existing is None:
        db.add(
            UploadChunk(
                upload_id=upload_id,
                chunk_index=chunk_index,
                storage_path=storage_path,
                size=size,
                checksum=checksum,
            )
        )
        try:
            await db.commit()
            return
        except IntegrityError:
            # A concurrent retry of the same index won the insert.
            await db.rollback()
            existing = await _get_chunk(db, upload_id, chunk_index)
            if existing is None:
                raise

    existing.storage_path = storage_path
    existing.size = size
    existing.checksum = checksum
    existing.uploaded_at = datetime.now(timezone.utc)
    await db.commit()


async def accept_chunk_service(
    *,
    user_id: str,
    upload_id: str,
    chunk_index: int,
    data: bytes,
    db: AsyncSession,
    storage: LocalObjectStorage,
) -> Dict[str, Any]:
    """Store one chunk (idempotently) and recompute completion."""
    upload = await _get_owned_upload(db, user_id, upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    if upload.status == "complete":
        raise HTTPException(status_code=409, detail="Upload already complete")
    if chunk_index < 0 or chunk_index >= upload.total_chunks:
        raise HTTPException(
            status_code=422,
            detail=f"chunkIndex must be between 0 and {upload.total_chunks - 1}",
        )
    if not data:
        raise HTTPException(status_code=422, detail="chunk must not be empty")
    if len(data) > settings.UPLOAD_MAX_CHUNK_BYTES:
        raise HTTPException(status_code=413, detail="Chunk exceeds the maximum chunk size")

    total_chunks = int(upload.total_chunks)
    bucket_name = upload.bucket_name
    chunk_path = chunk_storage_path(upload.storage_prefix, chunk_index)

    logger.debug("Uploading chunk %s/%s to %s, size: %s", chunk_index, total_chunks - 1, chunk_path, len(data))
    try:
        await storage.write(bucket_name, chunk_path, data)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail="Chunk storage unavailable, retry the chunk") from exc

    await _record_chunk(
        db,
        upload_id=upload_id,
        chunk_index=chunk_index,
        storage_path=chunk_path,
        size=len(data),
        checksum=hashlib.sha256(data).hexdigest(),
    )

    uploaded = await count_stored_chunks(db, upload_id)
    is_complete = uploaded >= total_chunks
    values: Dict[str, Any] = {"chunks_uploaded": uploaded}
    if is_complete:
        values["status"] = "complete"
        values["completed_at"] = datetime.now(timezone.utc)
    await db.execute(update(ChunkedUpload).where(ChunkedUpload.id == upload_id).values(**values))
    await db.commit()

    logger.info("Chunk %s done. Progress: %s/%s. Complete: %s", chunk_index, uploaded, total_chunks, is_complete)
    return {
        "chunk_index": chunk_index,
        "chunks_uploaded": uploaded,
        "total_chunks": total_chunks,
        "is_complete": is_complete,
    }


async def get_upload_status_service(
    *,
    user_id: str,
    db: AsyncSession,
    upload_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not upload_id:
        result = await db.execute(
            select(ChunkedUpload)
            .where(ChunkedUpload.user_id == user_id)
            .order_by(ChunkedUpload.created_at.desc())
        )
        return {"uploads": [serialize_upload(upload) for upload in result.scalars().all()]}

    upload = await _get_owned_upload(db, user_id, upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    chunks = await list_upload_chunks(db, upload_id)
    return {"upload": serialize_upload(upload, chunks)}


async def _load_complete_upload(db: AsyncSession, user_id: str, upload_id: str) -> ChunkedUpload:
    result = await db.execute(
        select(ChunkedUpload).where(
            ChunkedUpload.id == upload_id,
            ChunkedUpload.user_id == user_id,
            ChunkedUpload.status == "complete",
        )
    )
    upload = result.scalar_one_or_none()
    if upload is None:
        raise HTTPException(status_code=404, detail="Completed upload not found")
    return upload


async def retrieve_upload_service(
    *,
    user_id: str,
    upload_id: str,
    db: AsyncSession,
    storage: LocalObjectStorage,
) -> Tuple[ChunkedUpload, bytes]:
    """Concatenate every chunk in index order; any failed read aborts the whole retrieval."""
    upload = await _load_complete_upload(db, user_id, upload_id)
    chunks = await list_upload_chunks(db, upload_id)

    parts: List[bytes] = []
    for chunk in chunks:
        try:
            parts.append(await storage.read(upload.bucket_name, chunk.storage_path))
        except StorageError as exc:
            logger.error("Failed to download chunk %s of upload %s: %s", chunk.chunk_index, upload_id, exc)
            raise HTTPException(
                status_code=503,
                detail=f"Failed to download chunk {chunk.chunk_index}",
            ) from exc

    combined = b"".join(parts)
    logger.info("Retrieved file %s, total size: %s", upload.file_name, len(combined))
    return upload, combined


async def assemble_upload_service(
    *,
    user_id: str,
    upload_id: str,
    db: AsyncSession,
    storage: LocalObjectStorage,
) -> Dict[str, Any]:
    """Write the reassembled file next to its chunks so processing can read it in one pass."""
    upload, combined = await retrieve_upload_service(user_id=user_id, upload_id=upload_id, db=db, storage=storage)
    storage_path = assembled_storage_path(upload)
    try:
        await storage.write(upload.bucket_name, storage_path, combined)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail="Assembled file could not be stored, retry") from exc
    return {"upload_id": upload.id, "storage_path": storage_path, "size": len(combined)}


async def delete_upload_service(
    *,
    user_id: str,
    upload_id: str,
    db: AsyncSession,
    storage: LocalObjectStorage,
) -> Dict[str, Any]:
    """Delete a session, its chunk rows and stored objects; profiles survive unlinked."""
    upload = await _get_owned_upload(db, user_id, upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    bucket_name = upload.bucket_name
    storage_prefix = upload.storage_prefix

    await db.execute(
        update(ReferenceProfile)
        .where(ReferenceProfile.source_upload_id == upload_id)
        .values(source_upload_id=None)
    )
    await db.execute(delete(UploadChunk).where(UploadChunk.upload_id == upload_id))
    await db.execute(delete(ChunkedUpload).where(ChunkedUpload.id == upload_id))
    await db.commit()

    try:
        await storage.delete_prefix(bucket_name, storage_prefix)
    except StorageError as exc:
        logger.warning("Stored objects for upload %s were not removed: %s", upload_id, exc)

    return {"upload_id": upload_id}
