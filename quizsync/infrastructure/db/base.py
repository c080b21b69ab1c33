from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import declarative_base

# The two stores share logical tables but never share metadata.
LocalBase = declarative_base()
RemoteBase = declarative_base()


class LocalSyncMixin:
    """Bookkeeping columns carried by every participating row in the local store."""

    synced = Column(Boolean, default=False, nullable=False, index=True)
    last_synced = Column(DateTime(timezone=True), nullable=True)
    sync_attempted_at = Column(DateTime(timezone=True), nullable=True)
    sync_error = Column(String, nullable=True)

