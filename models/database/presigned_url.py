"""
Presigned URL grant model - time-limited capability URLs for assets
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from database import Base
from models.database.generation_job import generate_id
from shared.utils import utcnow


class PresignedUrlGrant(Base):
    """Issued URL for reading or writing an asset"""

    __tablename__ = "presigned_url_grants"

    id = Column(String(32), primary_key=True, default=generate_id)
    asset_id = Column(String(32), ForeignKey("assets.id"), nullable=False, index=True)
    purpose = Column(String(20), nullable=False)  # upload, download
    url = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    access_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        # At most one active grant per (asset, purpose)
        Index(
            "uq_presigned_url_grants_active",
            "asset_id",
            "purpose",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    def __repr__(self) -> str:
        return f"<PresignedUrlGrant {self.asset_id} {self.purpose} active={self.active}>"
