"""
SQLAlchemy ORM models for the local store tables.

This module contains table definitions only.
For the pydantic record and wire schemas, see schemas.py.
"""

from sqlalchemy import JSON, BigInteger, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    profile_photo_url = Column(String, nullable=True)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)


class Message(Base):
    """
    A chat message, created locally on send or received from the server.

    Table: messages
    Index: conversation_id (by-conversation)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    content = Column(Text, nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)  # epoch milliseconds
    sender_id = Column(Integer, nullable=False)
    conversation_id = Column(Integer, nullable=False, index=True)


class ConversationUser(Base):
    """Membership edge; the (conversation_id, user_id) pair is the key."""
    __tablename__ = "conversation_users"

    conversation_id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, primary_key=True, index=True)


class DraftMessage(Base):
    __tablename__ = "draft_messages"

    id = Column(Integer, primary_key=True)
    content = Column(Text, nullable=False, default="")
    conversation_id = Column(Integer, nullable=False, unique=True, index=True)


class SendMessageRequest(Base):
    """
    Durable record of the delivery attempts for one outbound message.

    Table: send_message_requests
    Unique: message_id (at most one request per message)
    """
    __tablename__ = "send_message_requests"

    id = Column(Integer, primary_key=True)
    message_id = Column(Integer, nullable=False, unique=True, index=True)
    status = Column(String, nullable=False, index=True)
    last_sent_at = Column(BigInteger, nullable=False)  # epoch milliseconds
    fail_count = Column(Integer, nullable=False, default=0)


class AppMetadata(Base):
    __tablename__ = "app_metadata"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
