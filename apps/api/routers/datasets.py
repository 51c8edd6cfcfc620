"""Reference dataset processing and threshold router."""

from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.schemas import CamelModel
from services.dataset_processing import list_thresholds_service, process_dataset_service
from services.storage import LocalObjectStorage, get_storage

router = APIRouter()


class ProcessDatasetRequest(CamelModel):
    dataset_type: str
    upload_id: Optional[str] = None
    raw_data: Optional[str] = None


class ThresholdSummary(CamelModel):
    metric: str
    optimal_threshold: float
    weight: float
    positive_mean: float
    negative_mean: float


class ProcessDatasetResponse(CamelModel):
    success: bool
    profiles_inserted: int
    thresholds_computed: int
    positive_count: int
    negative_count: int
    metrics: List[str]
    thresholds_summary: List[ThresholdSummary]
    records_skipped: int = 0
    chunks_skipped: int = 0
    profiles_failed: int = 0


class ThresholdResponse(CamelModel):
    dataset_type: str
    metric_name: str
    positive_mean: float
    positive_std: float
    negative_mean: float
    negative_std: float
    optimal_threshold: float
    weight: float
    sample_size_positive: int
    sample_size_negative: int
    computed_at: Optional[str] = None


class ThresholdListResponse(CamelModel):
    thresholds: Dict[str, Dict[str, ThresholdResponse]]
    is_data_driven: Dict[str, bool]


@router.post("/process", response_model=ProcessDatasetResponse)
async def process_dataset(
    request: ProcessDatasetRequest,
    _rate_limit: None = Depends(rate_limit("dataset_process", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalObjectStorage = Depends(get_storage),
):
    """Replace the caller's reference profiles and recompute the type's thresholds."""
    result = await process_dataset_service(
        auth=auth,
        dataset_type=request.dataset_type,
        upload_id=request.upload_id,
        raw_data=request.raw_data,
        db=db,
        storage=storage,
    )
    return ProcessDatasetResponse.model_validate(result)


@router.get("/thresholds", response_model=ThresholdListResponse)
async def list_thresholds(
    dataset_type: Optional[str] = Query(default=None, alias="datasetType"),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Computed thresholds per dataset type; types with none fall back to static defaults client-side."""
    result = await list_thresholds_service(db=db, dataset_type=dataset_type)
    return ThresholdListResponse.model_validate(result)
