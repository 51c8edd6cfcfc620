"""Reference profile model: one normalized subject feature vector."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, JSON, String
from sqlalchemy.sql import func

from database import Base


class ReferenceProfile(Base):
    """Labeled subject profile shared as calibration reference data."""

    __tablename__ = "dataset_reference_profiles"
    __table_args__ = (
        Index("ix_reference_profiles_type_uploader", "dataset_type", "uploaded_by"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    dataset_type = Column(String, nullable=False, index=True)
    subject_label = Column(String, nullable=False)
    is_positive = Column(Boolean, nullable=False, default=False)
    features = Column(JSON, nullable=False, default=dict)
    source_upload_id = Column(
        String,
        ForeignKey("chunked_uploads.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    uploaded_by = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
