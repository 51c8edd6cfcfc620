"""Application-level authorization for dataset writes.

Persistence runs under a single service credential, so isolation between
uploaders is decided here: every profile/threshold delete or insert is
preceded by one of these checks and filtered by the caller's identity.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.chunked_upload import ChunkedUpload
from models.reference_profile import ReferenceProfile
from services.dataset_types import DatasetType

if TYPE_CHECKING:
    from routers.auth_scope import AuthContext


class AccessPolicy:
    def __init__(self, writer_roles: Optional[Iterable[str]] = None):
        roles = settings.DATASET_WRITER_ROLES if writer_roles is None else writer_roles
        self.writer_roles = {str(role).strip().lower() for role in roles}

    def ensure_authenticated(self, auth: Optional[AuthContext]) -> AuthContext:
        if auth is None or not auth.user_id:
            raise HTTPException(status_code=401, detail="Authentication required.")
        return auth

    def ensure_can_calibrate(self, auth: AuthContext, dataset_type: DatasetType) -> None:
        """Only calibration roles may replace shared profiles and thresholds."""
        self.ensure_authenticated(auth)
        if not auth.has_any_role(self.writer_roles):
            raise HTTPException(
                status_code=403,
                detail=f"Role not permitted to calibrate {dataset_type.value} datasets.",
            )

    async def load_owned_upload(self, db: AsyncSession, auth: AuthContext, upload_id: str) -> ChunkedUpload:
        """Return the caller's upload; foreign and unknown uploads are indistinguishable (404)."""
        self.ensure_authenticated(auth)
        result = await db.execute(
            select(ChunkedUpload).where(
                ChunkedUpload.id == upload_id,
                ChunkedUpload.user_id == auth.user_id,
            )
        )
        upload = result.scalar_one_or_none()
        if upload is None:
            raise HTTPException(status_code=404, detail="Upload not found")
        return upload

    def profile_reset_scope(
        self,
        auth: AuthContext,
        dataset_type: DatasetType,
        upload_id: Optional[str] = None,
    ) -> List:
        """WHERE clauses limiting a profile reset to rows the caller owns."""
        self.ensure_authenticated(auth)
        if upload_id:
            return [
                ReferenceProfile.source_upload_id == upload_id,
                ReferenceProfile.uploaded_by == auth.user_id,
            ]
        return [
            ReferenceProfile.dataset_type == dataset_type.value,
            ReferenceProfile.uploaded_by == auth.user_id,
        ]
