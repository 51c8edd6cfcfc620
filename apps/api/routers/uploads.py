"""Chunked dataset upload router."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.schemas import CamelModel
from services.chunked_upload import (
    accept_chunk_service,
    assemble_upload_service,
    delete_upload_service,
    get_upload_status_service,
    init_upload_service,
    retrieve_upload_service,
)
from services.storage import LocalObjectStorage, get_storage

router = APIRouter()


class InitUploadRequest(CamelModel):
    file_name: str = Field(min_length=1, max_length=512)
    file_size: int = Field(gt=0)
    mime_type: Optional[str] = None
    chunk_size: Optional[int] = Field(default=None, gt=0)
    metadata: Optional[Dict[str, Any]] = None


class InitUploadResponse(CamelModel):
    success: bool = True
    upload_id: str
    total_chunks: int
    chunk_size: int
    storage_prefix: str


class ChunkAcceptedResponse(CamelModel):
    success: bool = True
    chunk_index: int
    chunks_uploaded: int
    total_chunks: int
    is_complete: bool


class UploadChunkResponse(CamelModel):
    chunk_index: int
    storage_path: str
    size: int
    checksum: Optional[str] = None
    uploaded_at: Optional[str] = None


class UploadSessionResponse(CamelModel):
    upload_id: str
    file_name: str
    original_size: int
    chunk_size: int
    total_chunks: int
    chunks_uploaded: int
    status: str
    storage_prefix: str
    mime_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    chunks: Optional[List[UploadChunkResponse]] = None


class UploadStatusResponse(CamelModel):
    upload: Optional[UploadSessionResponse] = None
    uploads: Optional[List[UploadSessionResponse]] = None


class AssembleUploadResponse(CamelModel):
    success: bool = True
    upload_id: str
    storage_path: str
    size: int


class DeleteUploadResponse(CamelModel):
    success: bool = True
    upload_id: str


async def _ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(id=auth.user_id, email=auth.email)
    db.add(user)
    await db.flush()
    return user


@router.post("/init", response_model=InitUploadResponse)
async def init_upload(
    request: InitUploadRequest,
    _rate_limit: None = Depends(rate_limit("upload_init", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Open a chunked upload session."""
    await _ensure_user(db, auth)
    result = await init_upload_service(
        user_id=auth.user_id,
        file_name=request.file_name,
        file_size=request.file_size,
        mime_type=request.mime_type,
        chunk_size=request.chunk_size,
        metadata=request.metadata,
        db=db,
    )
    return InitUploadResponse(**result)


@router.post("/chunk", response_model=ChunkAcceptedResponse)
async def upload_chunk(
    upload_id: str = Form(..., alias="uploadId"),
    chunk_index: int = Form(..., alias="chunkIndex"),
    chunk: UploadFile = File(...),
    _rate_limit: None = Depends(rate_limit("upload_chunk", limit=2000, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalObjectStorage = Depends(get_storage),
):
    """Store one chunk; re-sending an index overwrites it."""
    try:
        data = await chunk.read()
    finally:
        await chunk.close()
    result = await accept_chunk_service(
        user_id=auth.user_id,
        upload_id=upload_id,
        chunk_index=chunk_index,
        data=data,
        db=db,
        storage=storage,
    )
    return ChunkAcceptedResponse(**result)


@router.get("/status", response_model=UploadStatusResponse, response_model_exclude_none=True)
async def upload_status(
    upload_id: Optional[str] = Query(default=None, alias="uploadId"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """One session with its chunks, or every session of the caller newest first."""
    result = await get_upload_status_service(user_id=auth.user_id, upload_id=upload_id, db=db)
    return UploadStatusResponse.model_validate(result)


@router.get("/retrieve")
async def retrieve_upload(
    upload_id: str = Query(..., alias="uploadId"),
    _rate_limit: None = Depends(rate_limit("upload_retrieve", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalObjectStorage = Depends(get_storage),
):
    """Return the reassembled file of a completed upload."""
    upload, content = await retrieve_upload_service(
        user_id=auth.user_id,
        upload_id=upload_id,
        db=db,
        storage=storage,
    )
    return Response(
        content=content,
        media_type=upload.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{upload.file_name}"'},
    )


@router.post("/{upload_id}/assemble", response_model=AssembleUploadResponse)
async def assemble_upload(
    upload_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalObjectStorage = Depends(get_storage),
):
    """Store the reassembled file so processing can read it in one pass."""
    result = await assemble_upload_service(user_id=auth.user_id, upload_id=upload_id, db=db, storage=storage)
    return AssembleUploadResponse(**result)


@router.delete("/{upload_id}", response_model=DeleteUploadResponse)
async def delete_upload(
    upload_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalObjectStorage = Depends(get_storage),
):
    result = await delete_upload_service(user_id=auth.user_id, upload_id=upload_id, db=db, storage=storage)
    return DeleteUploadResponse(**result)
