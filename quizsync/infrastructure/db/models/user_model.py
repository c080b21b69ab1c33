#user_model.py
from sqlalchemy import Column, String, DateTime, Boolean
from ..base import LocalBase, RemoteBase, LocalSyncMixin


class UserColumns:
    id = Column(String(36), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    student_code = Column(String(50), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    class_level = Column("class", String(20), nullable=False)  # "SS2", "JSS3", "BASIC5"
    gender = Column(String(10), nullable=False)  # "MALE" or "FEMALE"
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_login = Column(DateTime(timezone=True), nullable=True)


class LocalUser(UserColumns, LocalSyncMixin, LocalBase):
    __tablename__ = "users"


class RemoteUser(UserColumns, RemoteBase):
    __tablename__ = "users"
