"""Issue, reuse and refresh presigned URLs for assets."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

from models.database import PresignedUrlGrant
from services.storage import ObjectStorage
from shared.enums import UploadState, UrlPurpose
from shared.exceptions import ValidationError
from shared.utils import as_utc, setup_logging, utcnow

from .asset_store import AssetStore
from .locks import KeyedLocks

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


def url_expiry(url: str) -> datetime | None:
    """Expiry encoded in a signed URL (X-Amz-Date + X-Amz-Expires, or epoch Expires)."""
    params = {name: values[0] for name, values in parse_qs(urlparse(url).query).items()}
    try:
        if "X-Amz-Date" in params and "X-Amz-Expires" in params:
            issued = datetime.strptime(params["X-Amz-Date"], AMZ_DATE_FORMAT).replace(tzinfo=UTC)
            return issued + timedelta(seconds=int(params["X-Amz-Expires"]))
        if "Expires" in params:
            return datetime.fromtimestamp(int(params["Expires"]), tz=UTC)
    except ValueError:
        return None
    return None


def remaining_validity(url: str, now: datetime | None = None) -> timedelta | None:
    """Time left before a signed URL expires, or None when it carries no expiry."""
    expiry = url_expiry(url)
    if expiry is None:
        return None
    return expiry - (now or utcnow())


class PresignedUrlManager:
    """Hands out time-limited URLs, regenerating them only when too close to expiry.

    At most one grant per (asset, purpose) is active. Regeneration is
    serialized per pair and persisted with a single deactivate-then-insert
    transaction, so concurrent callers never leave two active grants behind.
    """

    def __init__(
        self,
        asset_store: AssetStore,
        storage: ObjectStorage,
        ttl: timedelta = timedelta(hours=48),
        min_validity: timedelta = timedelta(minutes=30),
        max_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.asset_store = asset_store
        self.storage = storage
        self.ttl = min(ttl, max_ttl)
        self.min_validity = min_validity
        self.clock = clock
        self.logger = setup_logging("presigned-url-manager")
        self._locks = KeyedLocks()

    def _resolve_min_validity(self, min_validity: timedelta | None) -> timedelta:
        required = self.min_validity if min_validity is None else min_validity
        if required >= self.ttl:
            raise ValidationError(
                f"Minimum validity {required} cannot be met by URLs valid for {self.ttl}"
            )
        return required

    def _is_fresh(self, grant: PresignedUrlGrant | None, min_validity: timedelta, now: datetime) -> bool:
        if grant is None:
            return False
        return as_utc(grant.expires_at) - now >= min_validity

    async def get_url(
        self,
        asset_id: str,
        purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
        min_validity: timedelta | None = None,
    ) -> str:
        """Return a URL valid for at least `min_validity`, reusing the active grant when possible."""
        grant = await self.get_grant(asset_id, purpose, min_validity)
        return grant.url

    async def get_grant(
        self,
        asset_id: str,
        purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
        min_validity: timedelta | None = None,
    ) -> PresignedUrlGrant:
        purpose = UrlPurpose(purpose)
        required = self._resolve_min_validity(min_validity)

        grant = self.asset_store.get_active_grant(asset_id, purpose)
        if self._is_fresh(grant, required, self.clock()):
            self.asset_store.increment_access(grant.id)
            return grant

        async with self._locks.hold((asset_id, purpose.value)):
            # Another caller may have regenerated while we waited
            grant = self.asset_store.get_active_grant(asset_id, purpose)
            if self._is_fresh(grant, required, self.clock()):
                self.asset_store.increment_access(grant.id)
                return grant
            return await self._issue(asset_id, purpose)

    async def _issue(self, asset_id: str, purpose: UrlPurpose) -> PresignedUrlGrant:
        asset = self.asset_store.require(asset_id)
        if purpose is UrlPurpose.DOWNLOAD and asset.upload_state != UploadState.COMPLETED.value:
            raise ValidationError(f"Asset {asset_id} is {asset.upload_state}; nothing to download yet")

        issued_at = self.clock()
        url = await self.storage.presign(asset.bucket, asset.key, purpose, self.ttl)
        expires_at = issued_at + self.ttl
        encoded = url_expiry(url)
        if encoded is not None and encoded < expires_at:
            expires_at = encoded

        grant = self.asset_store.replace_active_grant(asset_id, purpose, url, expires_at)
        self.logger.info(f"Issued {purpose.value} URL for asset {asset_id} valid until {expires_at.isoformat()}")
        return grant

    def needing_refresh(
        self,
        asset_ids: Iterable[str],
        purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
        min_validity: timedelta | None = None,
    ) -> list[str]:
        """Subset of assets whose active grant is missing or expires too soon."""
        ids = list(dict.fromkeys(asset_ids))
        required = self._resolve_min_validity(min_validity)
        grants = self.asset_store.get_active_grants(ids, UrlPurpose(purpose))
        now = self.clock()
        return [asset_id for asset_id in ids if not self._is_fresh(grants.get(asset_id), required, now)]

    async def ensure_urls(
        self,
        asset_ids: Iterable[str],
        purpose: UrlPurpose = UrlPurpose.DOWNLOAD,
        min_validity: timedelta | None = None,
    ) -> tuple[list[str], dict[str, str]]:
        """Regenerate only the stale subset; returns (regenerated ids, url per asset)."""
        ids = list(dict.fromkeys(asset_ids))
        stale = self.needing_refresh(ids, purpose, min_validity)
        urls: dict[str, str] = {}
        for asset_id in ids:
            urls[asset_id] = await self.get_url(asset_id, purpose, min_validity)
        if stale:
            self.logger.info(f"Refreshed {len(stale)} of {len(ids)} {UrlPurpose(purpose).value} URLs")
        return stale, urls

    def deactivate_expired(self) -> int:
        count = self.asset_store.deactivate_expired(self.clock())
        if count:
            self.logger.info(f"Deactivated {count} expired URL grant(s)")
        return count
