from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from ..base import LocalBase, RemoteBase, LocalSyncMixin


class QuestionColumns:
    id = Column(String(36), primary_key=True, index=True)
    subject_id = Column(String(36), nullable=False, index=True)
    subject_code = Column(String(50), nullable=False, index=True)  # For sync identification
    text = Column(Text, nullable=False)
    options = Column(Text, nullable=False)  # versioned JSON envelope, see OptionSet
    answer = Column(String(1), nullable=False)
    question_order = Column(Integer, nullable=False)
    explanation = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)


class LocalQuestion(QuestionColumns, LocalSyncMixin, LocalBase):
    __tablename__ = "questions"


class RemoteQuestion(QuestionColumns, RemoteBase):
    __tablename__ = "questions"
