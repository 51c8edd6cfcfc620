"""Fixed-size batch writer for reference profiles."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.reference_profile import ReferenceProfile

logger = logging.getLogger(__name__)


class ProfileBatchWriter:
    """Buffer normalized profiles and insert them ``batch_size`` at a time.

    Peak memory is bounded by the batch size. A batch that fails to insert
    is logged and dropped; ``written`` only counts committed rows and
    ``failed`` counts the dropped ones.
    """

    def __init__(self, db: AsyncSession, batch_size: int = 100):
        self.db = db
        self.batch_size = max(int(batch_size), 1)
        self._buffer: List[Dict[str, Any]] = []
        self.written = 0
        self.failed = 0

    async def add(self, profile: Dict[str, Any]) -> None:
        self._buffer.append(profile)
        if len(self._buffer) >= self.batch_size:
            await self.flush()

    async def flush(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        try:
            self.db.add_all([ReferenceProfile(**row) for row in batch])
            await self.db.commit()
        except SQLAlchemyError:
            logger.exception("Reference profile batch insert failed; dropping %d rows", len(batch))
            await self.db.rollback()
            self.failed += len(batch)
            return
        self.written += len(batch)

    async def finish(self) -> int:
        await self.flush()
        return self.written
