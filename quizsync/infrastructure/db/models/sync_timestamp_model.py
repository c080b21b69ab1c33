from sqlalchemy import Column, String, DateTime
from ..base import LocalBase

GLOBAL_SYNC_KEY = "global"


class SyncTimestampModel(LocalBase):
    __tablename__ = "sync_timestamps"

    table_name = Column(String(50), primary_key=True)  # a sync table, or "global"
    last_pull_sync = Column(DateTime(timezone=True), nullable=True)  # remote watermark
    last_push_sync = Column(DateTime(timezone=True), nullable=True)
    last_full_sync = Column(DateTime(timezone=True), nullable=True)
