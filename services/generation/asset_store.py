"""Durable asset records and presigned URL grants."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.database import Asset, PresignedUrlGrant
from shared.enums import UploadState, UrlPurpose
from shared.exceptions import AssetNotFoundError
from shared.utils import setup_logging, utcnow


class AssetStore:
    """Assets keyed by their immutable (bucket, key) location, plus their grants."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory
        self.logger = setup_logging("generation-asset-store")

    # Assets

    def get_or_create(
        self,
        bucket: str,
        key: str,
        subject_ref: str | None = None,
        content_type: str | None = None,
    ) -> tuple[Asset, bool]:
        """Return the asset at bucket/key, inserting it only if absent."""
        with self.session_factory() as session:
            existing = self._find(session, bucket, key)
            if existing is not None:
                session.expunge(existing)
                return existing, False

            asset = Asset(
                bucket=bucket,
                key=key,
                subject_ref=subject_ref,
                content_type=content_type,
                upload_state=UploadState.PENDING.value,
            )
            session.add(asset)
            try:
                session.commit()
            except IntegrityError:
                # Lost the insert race; the other writer's row is authoritative
                session.rollback()
                existing = self._find(session, bucket, key)
                if existing is None:
                    raise
                session.expunge(existing)
                return existing, False
            session.refresh(asset)
            session.expunge(asset)
            return asset, True

    @staticmethod
    def _find(session: Session, bucket: str, key: str) -> Asset | None:
        return session.execute(
            select(Asset).where(Asset.bucket == bucket, Asset.key == key)
        ).scalar_one_or_none()

    def _update(self, asset_id: str, **values) -> Asset:
        with self.session_factory() as session:
            asset = session.get(Asset, asset_id)
            if asset is None:
                raise AssetNotFoundError(asset_id)
            for name, value in values.items():
                setattr(asset, name, value)
            asset.updated_at = utcnow()
            session.commit()
            session.refresh(asset)
            session.expunge(asset)
            return asset

    def mark_uploading(self, asset_id: str) -> Asset:
        return self._update(asset_id, upload_state=UploadState.UPLOADING.value, error_message=None)

    def mark_completed(
        self,
        asset_id: str,
        size_bytes: int,
        checksum: str | None,
        content_type: str | None,
    ) -> Asset:
        return self._update(
            asset_id,
            upload_state=UploadState.COMPLETED.value,
            size_bytes=size_bytes,
            checksum=checksum,
            content_type=content_type,
            error_message=None,
        )

    def mark_failed(self, asset_id: str, error_message: str) -> Asset:
        return self._update(asset_id, upload_state=UploadState.FAILED.value, error_message=error_message)

    def get(self, asset_id: str) -> Asset | None:
        with self.session_factory() as session:
            asset = session.get(Asset, asset_id)
            if asset is not None:
                session.expunge(asset)
            return asset

    def require(self, asset_id: str) -> Asset:
        asset = self.get(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset

    def get_many(self, asset_ids: Iterable[str]) -> dict[str, Asset]:
        ids = list(asset_ids)
        if not ids:
            return {}
        with self.session_factory() as session:
            assets = list(session.execute(select(Asset).where(Asset.id.in_(ids))).scalars())
            session.expunge_all()
        return {asset.id: asset for asset in assets}

    def count(self) -> int:
        with self.session_factory() as session:
            return session.execute(select(func.count(Asset.id))).scalar_one()

    # Grants

    def get_active_grant(self, asset_id: str, purpose: UrlPurpose) -> PresignedUrlGrant | None:
        with self.session_factory() as session:
            grant = session.execute(
                select(PresignedUrlGrant).where(
                    PresignedUrlGrant.asset_id == asset_id,
                    PresignedUrlGrant.purpose == UrlPurpose(purpose).value,
                    PresignedUrlGrant.active.is_(True),
                )
            ).scalar_one_or_none()
            if grant is not None:
                session.expunge(grant)
            return grant

    def get_active_grants(self, asset_ids: Iterable[str], purpose: UrlPurpose) -> dict[str, PresignedUrlGrant]:
        ids = list(asset_ids)
        if not ids:
            return {}
        with self.session_factory() as session:
            grants = list(
                session.execute(
                    select(PresignedUrlGrant).where(
                        PresignedUrlGrant.asset_id.in_(ids),
                        PresignedUrlGrant.purpose == UrlPurpose(purpose).value,
                        PresignedUrlGrant.active.is_(True),
                    )
                ).scalars()
            )
            session.expunge_all()
        return {grant.asset_id: grant for grant in grants}

    def replace_active_grant(
        self,
        asset_id: str,
        purpose: UrlPurpose,
        url: str,
        expires_at: datetime,
    ) -> PresignedUrlGrant:
        """Deactivate every active grant for (asset, purpose) and insert the new one atomically."""
        purpose_value = UrlPurpose(purpose).value
        with self.session_factory() as session:
            with session.begin():
                session.execute(
                    update(PresignedUrlGrant)
                    .where(
                        PresignedUrlGrant.asset_id == asset_id,
                        PresignedUrlGrant.purpose == purpose_value,
                        PresignedUrlGrant.active.is_(True),
                    )
                    .values(active=False)
                    .execution_options(synchronize_session=False)
                )
                grant = PresignedUrlGrant(
                    asset_id=asset_id,
                    purpose=purpose_value,
                    url=url,
                    expires_at=expires_at,
                    active=True,
                    access_count=1,
                )
                session.add(grant)
            session.refresh(grant)
            session.expunge(grant)
            return grant

    def increment_access(self, grant_id: str) -> None:
        with self.session_factory() as session:
            session.execute(
                update(PresignedUrlGrant)
                .where(PresignedUrlGrant.id == grant_id)
                .values(access_count=PresignedUrlGrant.access_count + 1)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def deactivate_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self.session_factory() as session:
            result = session.execute(
                update(PresignedUrlGrant)
                .where(PresignedUrlGrant.active.is_(True), PresignedUrlGrant.expires_at <= now)
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0

    def list_grants(self, asset_id: str) -> list[PresignedUrlGrant]:
        with self.session_factory() as session:
            grants = list(
                session.execute(
                    select(PresignedUrlGrant)
                    .where(PresignedUrlGrant.asset_id == asset_id)
                    .order_by(PresignedUrlGrant.created_at)
                ).scalars()
            )
            session.expunge_all()
            return grants

    def total_access_count(self, asset_id: str) -> int:
        with self.session_factory() as session:
            total = session.execute(
                select(func.coalesce(func.sum(PresignedUrlGrant.access_count), 0)).where(
                    PresignedUrlGrant.asset_id == asset_id
                )
            ).scalar_one()
            return int(total)
