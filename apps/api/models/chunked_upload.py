"""Chunked upload session and per-chunk models."""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class ChunkedUpload(Base):
    """One client-initiated resumable transfer."""

    __tablename__ = "chunked_uploads"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    original_size = Column(BigInteger, nullable=False)
    chunk_size = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    chunks_uploaded = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, uploading, complete, failed
    bucket_name = Column(String, nullable=False)
    storage_prefix = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="chunked_uploads")
    chunks = relationship(
        "UploadChunk",
        back_populates="upload",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="UploadChunk.chunk_index",
    )


class UploadChunk(Base):
    """One stored slice of a chunked upload."""

    __tablename__ = "upload_chunks"
    __table_args__ = (UniqueConstraint("upload_id", "chunk_index", name="uq_upload_chunks_upload_index"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    upload_id = Column(String, ForeignKey("chunked_uploads.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    storage_path = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    checksum = Column(String, nullable=True)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())

    upload = relationship("ChunkedUpload", back_populates="chunks")
