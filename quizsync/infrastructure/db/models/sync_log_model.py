from sqlalchemy import Column, String, DateTime, Text
from ..base import LocalBase


class SyncLogModel(LocalBase):
    __tablename__ = "sync_log"

    id = Column(String(36), primary_key=True)
    operation_type = Column(String(30), nullable=False)  # 'push', 'pull', 'conflict_resolution'
    table_name = Column(String(50), nullable=False, index=True)
    record_id = Column(String(36), nullable=False, index=True)
    status = Column(String(10), nullable=False, index=True)  # 'success', 'failed', 'pending'
    error_message = Column(Text, nullable=True)
    attempted_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
