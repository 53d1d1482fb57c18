"""Named JSON artifact storage.

Every pipeline artifact, clinical setting and the pump sync state is kept as
one row keyed by a stable name. Values are stored as canonical JSON text so
that identical values are byte-identical on disk.
"""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from loopcore.models.base import Base, TimestampMixin


class StoredBlob(Base, TimestampMixin):
    """One named JSON value (last writer wins)."""

    __tablename__ = "blobs"

    key: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )

    value_json: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StoredBlob(key={self.key}, updated_at={self.updated_at})>"
