from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON, BigInteger, Column, Integer, String, Text, DateTime, ForeignKey,
    Index, SmallInteger, CheckConstraint, Enum, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Portable JSON: JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# --- Enums ---

class SessionStatus(PyEnum):
    open = "open"
    closed = "closed"

# --- Models ---

class Chat(Base):
    __tablename__ = "chats"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    settings = relationship("ChatSettings", back_populates="chat", uselist=False)


class ChatSettings(Base):
    __tablename__ = "chat_settings"

    chat_id = Column(BigInteger, ForeignKey("chats.id"), primary_key=True)
    todoist_project_id = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    chat = relationship("Chat", back_populates="settings")


class Session(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(BigInteger, ForeignKey("chats.id"), nullable=False)
    # Nullable for rows written before ownership existed; such sessions have no owner.
    owner_id = Column(BigInteger, nullable=True)
    status = Column(
        Enum(SessionStatus, name="session_status", native_enum=False, length=16),
        nullable=False,
        default=SessionStatus.open,
    )
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    messages = relationship("Message", back_populates="session")

    __table_args__ = (
        Index("idx_sessions_chat_status", "chat_id", "status"),
        # At most one open session per chat.
        Index(
            "uq_sessions_chat_open",
            "chat_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(BigInteger, ForeignKey("chats.id"), nullable=False)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=True)
    message_id = Column(Integer, nullable=False)
    user_id = Column(BigInteger, nullable=True)
    username = Column(String, nullable=True)
    text = Column(Text, nullable=False, default="")
    ts = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    session = relationship("Session", back_populates="messages")

    __table_args__ = (
        Index("idx_messages_chat", "chat_id"),
        Index("idx_messages_session_ts", "session_id", "ts"),
    )


class DraftTask(Base):
    __tablename__ = "draft_tasks"

    session_id = Column(Integer, ForeignKey("sessions.id"), primary_key=True)
    title = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    due_iso = Column(String, nullable=True)
    priority = Column(SmallInteger, CheckConstraint("priority BETWEEN 1 AND 4"), nullable=True)
    assignee_note = Column(String, nullable=True)
    labels = Column(JSONType, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class CreatedTask(Base):
    __tablename__ = "created_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False)
    todoist_task_id = Column(String, nullable=False)
    url = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_created_tasks_session", "session_id"),
    )


class AuditEdit(Base):
    __tablename__ = "audit_edits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False)
    instruction_text = Column(Text, nullable=False)
    diff_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_audit_edits_session", "session_id"),
    )
