"""
Asset model - durably stored binary artifacts
"""

from sqlalchemy import BigInteger, Column, DateTime, String, Text, UniqueConstraint

from database import Base
from models.database.generation_job import generate_id
from shared.enums import UploadState
from shared.utils import utcnow


class Asset(Base):
    """Object in durable storage; bucket and key never change after creation"""

    __tablename__ = "assets"

    id = Column(String(32), primary_key=True, default=generate_id)
    bucket = Column(String(255), nullable=False)
    key = Column(String(1024), nullable=False)
    subject_ref = Column(String(255), nullable=True, index=True)
    size_bytes = Column(BigInteger, nullable=True)
    content_type = Column(String(100), nullable=True)
    checksum = Column(String(128), nullable=True)  # sha256 hex
    upload_state = Column(String(20), nullable=False, default=UploadState.PENDING.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("bucket", "key", name="uq_assets_bucket_key"),)

    def __repr__(self) -> str:
        return f"<Asset {self.id} {self.bucket}/{self.key} {self.upload_state}>"
