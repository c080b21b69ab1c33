from sqlalchemy import Column, Integer, String, DateTime, Text
from ..base import LocalBase


class SyncQueueModel(LocalBase):
    __tablename__ = "sync_queue"

    id = Column(String(36), primary_key=True)
    type = Column(String(30), nullable=False)
    table_name = Column(String(50), nullable=False)
    record_id = Column(String(36), nullable=False)
    data = Column(Text, nullable=False)  # JSON
    tier = Column(String(20), nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
