"""SQLAlchemy ORM models for users, wallets, conversations, actions and usage."""
import datetime
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tzinfo)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    privy_id = Column(String(128), unique=True, nullable=False, index=True)
    early_access = Column(Boolean, default=False)
    degen_mode = Column(Boolean, default=False)
    free_messages_remaining = Column(Integer, default=10)
    subscription_plan = Column(String(32), nullable=True)
    subscription_expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    wallets = relationship("Wallet", back_populates="owner", cascade="all, delete-orphan",
                           order_by="Wallet.id")
    conversations = relationship("Conversation", back_populates="owner", cascade="all, delete-orphan")

    def has_active_subscription(self, now: datetime.datetime = None) -> bool:
        if not self.subscription_plan:
            return False
        return self.subscription_expiry is None or self.subscription_expiry > (now or utcnow())


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(64), default="Default")
    public_key = Column(String(128), nullable=False)  # Bitcoin address
    provider = Column(String(32), default="")  # unisat / xverse / leather / okx / magiceden
    created_at = Column(DateTime, default=utcnow)

    owner = relationship("User", back_populates="wallets")


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True)  # chosen by the client
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(128), default="New chat")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(32), primary_key=True, default=_new_id)
    conversation_id = Column(String(64), ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user / assistant / system
    content = Column(Text, default="")
    tool_invocations = Column(JSON, nullable=True)
    attachments = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict:
        """Transcript shape shared with the chat client."""
        out = {
            "id": self.id,
            "role": self.role,
            "content": self.content or "",
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if self.tool_invocations:
            out["toolInvocations"] = self.tool_invocations
        if self.attachments:
            out["experimental_attachments"] = self.attachments
        return out


class Action(Base):
    __tablename__ = "actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id"), nullable=False)
    name = Column(String(128), default="")
    description = Column(Text, nullable=False)  # prompt replayed on every run
    params = Column(JSON, nullable=True)
    frequency = Column(Integer, nullable=True)  # seconds between runs
    max_executions = Column(Integer, nullable=True)
    times_executed = Column(Integer, default=0)
    last_executed_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_response = Column(Text, default="")
    triggered = Column(Boolean, default=True)
    paused = Column(Boolean, default=False)
    completed = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User")


class TokenStat(Base):
    __tablename__ = "token_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    message_ids = Column(JSON, default=list)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    transaction_id = Column(String(128), unique=True, nullable=False)
    plan = Column(String(32), nullable=False)
    amount_btc = Column(Float, nullable=False)
    provider = Column(String(32), default="")
    created_at = Column(DateTime, default=utcnow)
