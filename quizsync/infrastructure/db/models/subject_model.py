from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from ..base import LocalBase, RemoteBase, LocalSyncMixin


class SubjectColumns:
    id = Column(String(36), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    subject_code = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    class_level = Column("class", String(20), nullable=False)
    total_questions = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    category = Column(String(100), nullable=True)
    academic_year = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)


class LocalSubject(SubjectColumns, LocalSyncMixin, LocalBase):
    __tablename__ = "subjects"


class RemoteSubject(SubjectColumns, RemoteBase):
    __tablename__ = "subjects"
