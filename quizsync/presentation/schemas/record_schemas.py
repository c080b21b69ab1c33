from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from quizsync.presentation.schemas.payload_schemas import AnswerSheet, OptionSet

# ------------------ Participating tables ------------------

TABLE_USERS = "users"
TABLE_SUBJECTS = "subjects"
TABLE_QUESTIONS = "questions"
TABLE_QUIZ_ATTEMPTS = "quiz_attempts"

# Reference data first so attempts never arrive before what they point at.
SYNC_TABLES = (TABLE_USERS, TABLE_SUBJECTS, TABLE_QUESTIONS, TABLE_QUIZ_ATTEMPTS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (SQLite hands those back) are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RecordBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    updated_at: datetime

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value

    def sync_fields(self) -> Dict[str, Any]:
        """Column values without the union tag."""
        return self.model_dump(exclude={"table"})


# ------------------ Record variants ------------------

class UserRecord(RecordBase):
    table: Literal["users"] = TABLE_USERS
    name: str
    student_code: str
    password_hash: str
    class_level: str
    gender: str
    is_active: bool = True
    created_at: datetime
    last_login: Optional[datetime] = None


class SubjectRecord(RecordBase):
    table: Literal["subjects"] = TABLE_SUBJECTS
    name: str
    subject_code: str
    description: Optional[str] = None
    class_level: str
    total_questions: int = 0
    is_active: bool = True
    category: Optional[str] = None
    academic_year: Optional[str] = None
    created_at: datetime


class QuestionRecord(RecordBase):
    table: Literal["questions"] = TABLE_QUESTIONS
    subject_id: str
    subject_code: str
    text: str
    options: str
    answer: str
    question_order: int
    explanation: Optional[str] = None
    is_active: bool = True
    created_at: datetime

    def option_set(self) -> OptionSet:
        return OptionSet.loads(self.options)


class QuizAttemptRecord(RecordBase):
    table: Literal["quiz_attempts"] = TABLE_QUIZ_ATTEMPTS
    user_id: str
    subject_id: str
    answers: Optional[str] = None
    score: Optional[int] = None
    total_questions: int
    submitted: bool = False
    started_at: datetime
    submitted_at: Optional[datetime] = None
    session_duration: Optional[int] = None
    elapsed_time: int = 0
    last_active_at: Optional[datetime] = None

    def answer_sheet(self) -> AnswerSheet:
        return AnswerSheet.loads(self.answers)

    def submission_time(self) -> datetime:
        return self.submitted_at or self.updated_at


SyncRecord = Annotated[
    Union[UserRecord, SubjectRecord, QuestionRecord, QuizAttemptRecord],
    Field(discriminator="table"),
]

RECORD_TYPES: Dict[str, Type[RecordBase]] = {
    TABLE_USERS: UserRecord,
    TABLE_SUBJECTS: SubjectRecord,
    TABLE_QUESTIONS: QuestionRecord,
    TABLE_QUIZ_ATTEMPTS: QuizAttemptRecord,
}

_record_adapter = TypeAdapter(SyncRecord)


def record_type(table: str) -> Type[RecordBase]:
    try:
        return RECORD_TYPES[table]
    except KeyError:
        raise ValueError(f"Table {table!r} does not participate in sync")


def record_from_row(table: str, row: Any) -> RecordBase:
    return record_type(table).model_validate(row)


def parse_record(data: Dict[str, Any]) -> RecordBase:
    """Rebuild a typed record from its JSON form (``table`` tag required)."""
    return _record_adapter.validate_python(data)
