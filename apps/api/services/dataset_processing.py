"""Dataset processing: stream reference records into profiles and thresholds.

One call handles one request on a single logical thread:

1. resolve the input (inline text, assembled file, or chunk sequence),
2. stream records through the parser, statistics accumulator and batch writer,
   dropping the caller's previous profiles for the same scope just before
   the first record is written,
3. flush the writer,
4. calibrate and replace the dataset type's thresholds,
5. report counts, including everything skipped along the way.

Thresholds come only from values seen in the current run; the profile table
is never re-read.
"""

from __future__ import annotations

import codecs
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Mapping, NamedTuple, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.chunked_upload import ChunkedUpload
from models.computed_threshold import ComputedThreshold
from models.reference_profile import ReferenceProfile
from services.access_policy import AccessPolicy
from services.calibration import ThresholdResult, calibrate
from services.chunked_upload import assembled_storage_path, list_upload_chunks
from services.dataset_types import DatasetType, is_positive_label, label_text, parse_dataset_type
from services.profile_writer import ProfileBatchWriter
from services.record_parser import (
    IDENTIFIER_FIELD,
    LABEL_FIELD,
    DataFormat,
    RecordParser,
    parse_decimal,
    parse_json_document,
    sniff_format,
)
from services.statistics import StatisticsAccumulator
from services.storage import LocalObjectStorage, StorageError

if TYPE_CHECKING:
    from routers.auth_scope import AuthContext

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = (IDENTIFIER_FIELD, LABEL_FIELD)


def to_number(value: Any) -> Optional[float]:
    """Finite float for numeric cells and numeric strings, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        return parse_decimal(value)
    else:
        return None
    return number if math.isfinite(number) else None


def extract_features(record: Mapping[str, Any], metric_keys: Sequence[str]) -> Dict[str, float]:
    """Configured metrics first, then every other numeric column."""
    features: Dict[str, float] = {}
    for key in metric_keys:
        number = to_number(record.get(key))
        if number is not None:
            features[key] = number
    for key, value in record.items():
        if key in IDENTITY_FIELDS or key in features:
            continue
        number = to_number(value)
        if number is not None:
            features[str(key)] = number
    return features


class ChunkLocation(NamedTuple):
    chunk_index: int
    storage_path: str


@dataclass
class ResolvedInput:
    kind: str  # raw, assembled, chunks
    text: Optional[str] = None
    chunks: List[ChunkLocation] = field(default_factory=list)


class DatasetProcessor:
    """Request-scoped orchestrator; all parser/accumulator/writer state dies with it."""

    def __init__(
        self,
        db: AsyncSession,
        storage: LocalObjectStorage,
        *,
        auth: "AuthContext",
        dataset_type: DatasetType,
        metric_config: Optional[Mapping[DatasetType, Sequence[str]]] = None,
        upload: Optional[ChunkedUpload] = None,
        policy: Optional[AccessPolicy] = None,
        batch_size: Optional[int] = None,
    ):
        config = settings.DATASET_METRICS if metric_config is None else metric_config
        self.db = db
        self.storage = storage
        self.auth = auth
        self.dataset_type = dataset_type
        self.metric_keys: List[str] = list(config.get(dataset_type, []))
        # A failed batch rolls the session back and expires ORM instances,
        # so the upload's columns are copied out once here.
        self.upload_id: Optional[str] = upload.id if upload is not None else None
        self.upload_status = upload.status if upload is not None else None
        self.bucket_name = upload.bucket_name if upload is not None else None
        self.assembled_path = assembled_storage_path(upload) if upload is not None else None
        self.policy = policy or AccessPolicy()
        self.accumulator = StatisticsAccumulator()
        self.parser = RecordParser()
        self.writer = ProfileBatchWriter(db, batch_size or settings.PROFILE_BATCH_SIZE)
        self.data_format: Optional[DataFormat] = None
        self.profiles_reset = False
        self.json_records_skipped = 0
        self.chunks_read = 0
        self.chunks_skipped = 0

    @property
    def records_skipped(self) -> int:
        return self.parser.skipped + self.json_records_skipped

    async def resolve_input(self, raw_text: Optional[str]) -> ResolvedInput:
        """Inline text, else the assembled file, else the ordered chunk list."""
        if raw_text is not None:
            return ResolvedInput(kind="raw", text=raw_text.lstrip("\ufeff"))

        if self.upload_id is None:
            raise HTTPException(status_code=422, detail="Either uploadId or rawData is required")
        if self.upload_status != "complete":
            raise HTTPException(status_code=409, detail="Upload is not complete")

        if await self.storage.exists(self.bucket_name, self.assembled_path):
            try:
                data = await self.storage.read(self.bucket_name, self.assembled_path)
                return ResolvedInput(kind="assembled", text=data.decode("utf-8-sig", errors="replace"))
            except StorageError as exc:
                logger.warning("Assembled file %s unreadable, streaming chunks instead: %s", self.assembled_path, exc)

        chunks = [
            ChunkLocation(chunk.chunk_index, chunk.storage_path)
            for chunk in await list_upload_chunks(self.db, self.upload_id)
        ]
        if not chunks:
            raise HTTPException(status_code=422, detail="Could not read uploaded file or chunks")
        return ResolvedInput(kind="chunks", chunks=chunks)

    async def reset_profiles(self) -> None:
        """Drop the caller's earlier profiles for this scope, at most once per run."""
        if self.profiles_reset:
            return
        clauses = self.policy.profile_reset_scope(self.auth, self.dataset_type, self.upload_id)
        await self.db.execute(delete(ReferenceProfile).where(*clauses))
        await self.db.commit()
        self.profiles_reset = True

    async def add_record(self, record: Mapping[str, Any]) -> None:
        await self.reset_profiles()
        features = extract_features(record, self.metric_keys)
        is_positive = is_positive_label(record[LABEL_FIELD])

        self.accumulator.observe_subject(is_positive)
        for metric, value in features.items():
            self.accumulator.push(metric, is_positive, value)

        await self.writer.add(
            {
                "dataset_type": self.dataset_type.value,
                "subject_label": label_text(record[IDENTIFIER_FIELD]),
                "is_positive": is_positive,
                "features": features,
                "source_upload_id": self.upload_id,
                "uploaded_by": self.auth.user_id,
            }
        )

    async def _consume_json(self, text: str) -> None:
        try:
            records, skipped = parse_json_document(text)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="Dataset JSON could not be parsed") from exc
        self.json_records_skipped += skipped
        for record in records:
            await self.add_record(record)

    async def consume_text(self, text: str) -> None:
        """Parse a complete document held in one unit."""
        self.data_format = sniff_format(text)
        if self.data_format is DataFormat.JSON:
            await self._consume_json(text)
        elif self.data_format is DataFormat.DELIMITED:
            for record in self.parser.feed(text) + self.parser.finish():
                await self.add_record(record)

    async def consume_stream(self, units: AsyncIterator[str]) -> None:
        """Parse text arriving in order; the format is sniffed once from the leading text."""
        pending = ""
        json_parts: List[str] = []
        async for text in units:
            if self.data_format is None:
                pending += text
                detected = sniff_format(pending, complete=False)
                if detected is DataFormat.UNRECOGNIZED:
                    continue
                self.data_format = detected
                text, pending = pending, ""
            if self.data_format is DataFormat.JSON:
                # JSON cannot be split on line boundaries; it is parsed once reassembled.
                json_parts.append(text)
                continue
            for record in self.parser.feed(text):
                await self.add_record(record)

        if self.data_format is None:
            self.data_format = DataFormat.UNRECOGNIZED
        elif self.data_format is DataFormat.JSON:
            # A leading bracket only suggested JSON; the whole text decides, as for inline input.
            await self.consume_text("".join(json_parts))
        else:
            for record in self.parser.finish():
                await self.add_record(record)

    async def iter_chunk_texts(self, chunks: Sequence[ChunkLocation]) -> AsyncIterator[str]:
        """Read chunks in ascending index order; unreadable chunks are skipped and counted."""
        decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
        for chunk in sorted(chunks, key=lambda item: item.chunk_index):
            try:
                data = await self.storage.read(self.bucket_name, chunk.storage_path)
            except StorageError as exc:
                self.chunks_skipped += 1
                logger.warning("Skipping unreadable chunk %s of upload %s: %s", chunk.chunk_index, self.upload_id, exc)
                continue
            self.chunks_read += 1
            yield decoder.decode(data)
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    def compute_thresholds(self) -> List[ThresholdResult]:
        results: List[ThresholdResult] = []
        for metric in self.accumulator.metrics():
            result = calibrate(
                metric,
                self.accumulator.snapshot(metric, True),
                self.accumulator.snapshot(metric, False),
            )
            if result is not None:
                results.append(result)
        return results

    async def replace_thresholds(self, results: Sequence[ThresholdResult]) -> int:
        """Swap the dataset type's thresholds in one transaction; on failure the old set stays."""
        self.policy.ensure_can_calibrate(self.auth, self.dataset_type)
        computed_at = datetime.now(timezone.utc)
        try:
            await self.db.execute(
                delete(ComputedThreshold).where(ComputedThreshold.dataset_type == self.dataset_type.value)
            )
            self.db.add_all(
                [
                    ComputedThreshold(
                        dataset_type=self.dataset_type.value,
                        metric_name=result.metric_name,
                        positive_mean=result.positive.mean,
                        positive_std=result.positive.std,
                        negative_mean=result.negative.mean,
                        negative_std=result.negative.std,
                        optimal_threshold=result.optimal_threshold,
                        weight=result.weight,
                        sample_size_positive=result.positive.n,
                        sample_size_negative=result.negative.n,
                        computed_at=computed_at,
                    )
                    for result in results
                ]
            )
            await self.db.commit()
        except SQLAlchemyError:
            logger.exception("Threshold insert failed for %s", self.dataset_type.value)
            await self.db.rollback()
            return 0
        return len(results)

    async def run(self, raw_text: Optional[str] = None) -> Dict[str, Any]:
        source = await self.resolve_input(raw_text)

        self.policy.ensure_can_calibrate(self.auth, self.dataset_type)

        if source.kind == "chunks":
            logger.info("Stream-parsing %d chunks of upload %s", len(source.chunks), self.upload_id)
            await self.consume_stream(self.iter_chunk_texts(source.chunks))
            if self.chunks_read == 0:
                raise HTTPException(status_code=503, detail="Could not read uploaded file or chunks")
        else:
            await self.consume_text(source.text or "")

        if self.data_format is DataFormat.UNRECOGNIZED:
            raise HTTPException(status_code=422, detail="Dataset is empty or in an unrecognized format")

        # A recognized input with no usable records still clears the old scope.
        await self.reset_profiles()
        profiles_inserted = await self.writer.finish()
        logger.info("Inserted %d profiles (%d failed)", profiles_inserted, self.writer.failed)

        thresholds = self.compute_thresholds()
        thresholds_computed = await self.replace_thresholds(thresholds)
        logger.info("Computed %d thresholds for %s", thresholds_computed, self.dataset_type.value)

        return {
            "success": True,
            "profiles_inserted": profiles_inserted,
            "thresholds_computed": thresholds_computed,
            "positive_count": self.accumulator.class_count(True),
            "negative_count": self.accumulator.class_count(False),
            "metrics": self.accumulator.metrics(),
            "thresholds_summary": [result.summary() for result in thresholds],
            "records_skipped": self.records_skipped,
            "chunks_skipped": self.chunks_skipped,
            "profiles_failed": self.writer.failed,
        }


async def process_dataset_service(
    *,
    auth: "AuthContext",
    dataset_type: Any,
    db: AsyncSession,
    storage: LocalObjectStorage,
    upload_id: Optional[str] = None,
    raw_data: Optional[str] = None,
    metric_config: Optional[Mapping[DatasetType, Sequence[str]]] = None,
    policy: Optional[AccessPolicy] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Validate, authorize and run one processing request."""
    parsed_type = parse_dataset_type(dataset_type)
    if parsed_type is None:
        raise HTTPException(status_code=422, detail="Invalid dataset type.")

    raw_text = raw_data if raw_data and raw_data.strip() else None
    upload_id = str(upload_id or "").strip() or None
    if raw_text is None and upload_id is None:
        raise HTTPException(status_code=422, detail="Either uploadId or rawData is required")

    policy = policy or AccessPolicy()
    policy.ensure_can_calibrate(auth, parsed_type)
    upload = await policy.load_owned_upload(db, auth, upload_id) if upload_id else None

    logger.info("Processing %s dataset for user %s", parsed_type.value, auth.user_id)
    processor = DatasetProcessor(
        db,
        storage,
        auth=auth,
        dataset_type=parsed_type,
        metric_config=metric_config,
        upload=upload,
        policy=policy,
        batch_size=batch_size,
    )
    return await processor.run(raw_text)


def serialize_threshold(row: ComputedThreshold) -> Dict[str, Any]:
    return {
        "dataset_type": row.dataset_type,
        "metric_name": row.metric_name,
        "positive_mean": row.positive_mean,
        "positive_std": row.positive_std,
        "negative_mean": row.negative_mean,
        "negative_std": row.negative_std,
        "optimal_threshold": row.optimal_threshold,
        "weight": row.weight,
        "sample_size_positive": row.sample_size_positive,
        "sample_size_negative": row.sample_size_negative,
        "computed_at": row.computed_at.isoformat() if row.computed_at else None,
    }


async def list_thresholds_service(*, db: AsyncSession, dataset_type: Optional[str] = None) -> Dict[str, Any]:
    """Thresholds grouped per dataset type, with a data-driven flag per type."""
    query = select(ComputedThreshold).order_by(ComputedThreshold.dataset_type, ComputedThreshold.metric_name)
    if dataset_type:
        parsed_type = parse_dataset_type(dataset_type)
        if parsed_type is None:
            raise HTTPException(status_code=422, detail="Invalid dataset type.")
        types = [parsed_type]
        query = query.where(ComputedThreshold.dataset_type == parsed_type.value)
    else:
        types = list(DatasetType)

    result = await db.execute(query)
    grouped: Dict[str, Dict[str, Dict[str, Any]]] = {item.value: {} for item in types}
    for row in result.scalars().all():
        grouped.setdefault(row.dataset_type, {})[row.metric_name] = serialize_threshold(row)

    return {
        "thresholds": grouped,
        "is_data_driven": {key: bool(value) for key, value in grouped.items()},
    }
