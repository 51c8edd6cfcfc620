"""ComputedThreshold model: per-metric calibration for a dataset type."""

import uuid

from sqlalchemy import Column, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class ComputedThreshold(Base):
    """Decision threshold and effect-size weight derived from reference profiles."""

    __tablename__ = "dataset_computed_thresholds"
    __table_args__ = (
        UniqueConstraint("dataset_type", "metric_name", name="uq_computed_thresholds_type_metric"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    dataset_type = Column(String, nullable=False, index=True)
    metric_name = Column(String, nullable=False)
    positive_mean = Column(Float, nullable=False, default=0.0)
    positive_std = Column(Float, nullable=False, default=0.0)
    negative_mean = Column(Float, nullable=False, default=0.0)
    negative_std = Column(Float, nullable=False, default=0.0)
    optimal_threshold = Column(Float, nullable=False, default=0.0)
    weight = Column(Float, nullable=False, default=1.0)
    sample_size_positive = Column(Integer, nullable=False, default=0)
    sample_size_negative = Column(Integer, nullable=False, default=0)
    computed_at = Column(DateTime(timezone=True), server_default=func.now())
