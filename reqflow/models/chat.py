"""
Reqflow
Chat models.

Models:
    - ChatSessionRecord: one conversation about a project
    - ChatMessageRecord: ordered turns of a session (user / assistant / system)
"""

from datetime import datetime, timezone

from reqflow.ai.entities import ChatMessage, ChatSession
from reqflow.models import db
from reqflow.models._helpers import dumps, loads, utc


def _now():
    return datetime.now(timezone.utc)


class ChatSessionRecord(db.Model):
    __tablename__ = "chat_sessions"

    id = db.Column(db.String(36), primary_key=True)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(300), default="")
    status = db.Column(db.String(20), nullable=False, default="active")
    message_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=_now)
    updated_at = db.Column(db.DateTime, default=_now)

    messages = db.relationship(
        "ChatMessageRecord", backref="chat_session", cascade="all, delete-orphan",
        passive_deletes=True, order_by="ChatMessageRecord.seq",
    )

    __table_args__ = (
        db.CheckConstraint("status IN ('active','closed')", name="ck_chat_session_status"),
    )

    @classmethod
    def from_entity(cls, entity: ChatSession) -> "ChatSessionRecord":
        now = _now()
        return cls(
            id=entity.id,
            project_id=entity.project_id,
            user_id=entity.user_id,
            title=entity.title,
            status=entity.status,
            message_count=entity.message_count,
            created_at=entity.created_at or now,
            updated_at=entity.updated_at or now,
        )

    def to_entity(self) -> ChatSession:
        return ChatSession(
            id=self.id,
            project_id=self.project_id,
            user_id=self.user_id,
            title=self.title or "",
            status=self.status,
            message_count=self.message_count or 0,
            created_at=utc(self.created_at),
            updated_at=utc(self.updated_at),
        )

    def __repr__(self):
        return f"<ChatSessionRecord id={self.id} project={self.project_id} status={self.status}>"


class ChatMessageRecord(db.Model):
    __tablename__ = "chat_messages"

    id = db.Column(db.String(36), primary_key=True)
    session_id = db.Column(
        db.String(36), db.ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    seq = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(20), nullable=False)
    content = db.Column(db.Text, nullable=False)
    provider = db.Column(db.String(30), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=_now)

    __table_args__ = (
        db.CheckConstraint("role IN ('user','assistant','system')", name="ck_chat_message_role"),
        db.UniqueConstraint("session_id", "seq", name="uq_chat_message_seq"),
    )

    @classmethod
    def from_entity(cls, entity: ChatMessage) -> "ChatMessageRecord":
        return cls(
            id=entity.id,
            session_id=entity.session_id,
            seq=entity.seq,
            role=entity.role,
            content=entity.content,
            provider=entity.provider,
            metadata_json=dumps(entity.metadata or None),
            created_at=entity.created_at or _now(),
        )

    def to_entity(self) -> ChatMessage:
        return ChatMessage(
            id=self.id,
            session_id=self.session_id,
            role=self.role,
            content=self.content,
            seq=self.seq,
            provider=self.provider,
            metadata=loads(self.metadata_json, {}),
            created_at=utc(self.created_at),
        )
