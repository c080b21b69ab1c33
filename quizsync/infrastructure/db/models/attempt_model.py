from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from ..base import LocalBase, RemoteBase, LocalSyncMixin


class QuizAttemptColumns:
    id = Column(String(36), primary_key=True, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    subject_id = Column(String(36), nullable=False, index=True)
    answers = Column(Text, nullable=True)  # versioned JSON envelope, see AnswerSheet
    score = Column(Integer, nullable=True)
    total_questions = Column(Integer, nullable=False)
    submitted = Column(Boolean, default=False, nullable=False)  # never reverts to False
    started_at = Column(DateTime(timezone=True), nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)
    session_duration = Column(Integer, nullable=True)
    elapsed_time = Column(Integer, default=0, nullable=False)  # seconds
    last_active_at = Column(DateTime(timezone=True), nullable=True)


class LocalQuizAttempt(QuizAttemptColumns, LocalSyncMixin, LocalBase):
    __tablename__ = "quiz_attempts"


class RemoteQuizAttempt(QuizAttemptColumns, RemoteBase):
    __tablename__ = "quiz_attempts"
