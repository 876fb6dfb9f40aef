"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)

from wa_store.storage import Base


class Message(Base):
    """
    One stored WebMessageInfo per (session, chat, message id).

    Table: messages
    Primary Key: pk_id (surrogate, used as pagination cursor)
    Unique: (session_id, remote_jid, id)
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("session_id", "remote_jid", "id", name="uq_messages_session_jid_id"),
    )

    pk_id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(128), nullable=False, index=True)
    remote_jid = Column(String(128), nullable=False)
    id = Column(String(128), nullable=False)

    agent_id = Column(String(128), nullable=True)
    biz_privacy_status = Column(Integer, nullable=True)
    broadcast = Column(Boolean, nullable=True)
    clear_media = Column(Boolean, nullable=True)
    duration = Column(Integer, nullable=True)
    ephemeral_duration = Column(Integer, nullable=True)
    ephemeral_off_to_on = Column(Boolean, nullable=True)
    ephemeral_out_of_sync = Column(Boolean, nullable=True)
    ephemeral_start_timestamp = Column(BigInteger, nullable=True)
    final_live_location = Column(JSON, nullable=True)
    future_proof_data = Column(LargeBinary, nullable=True)
    ignore = Column(Boolean, nullable=True)
    keep_in_chat = Column(JSON, nullable=True)
    key = Column(JSON, nullable=False)
    labels = Column(JSON, nullable=True)
    media_ciphertext_sha256 = Column(LargeBinary, nullable=True)
    media_data = Column(JSON, nullable=True)
    message = Column(JSON, nullable=True)
    message_c2s_timestamp = Column(BigInteger, nullable=True)
    message_secret = Column(LargeBinary, nullable=True)
    message_stub_parameters = Column(JSON, nullable=True)
    message_stub_type = Column(Integer, nullable=True)
    message_timestamp = Column(BigInteger, nullable=True)
    multicast = Column(Boolean, nullable=True)
    original_self_author_user_jid_string = Column(String(128), nullable=True)
    participant = Column(String(128), nullable=True)
    payment_info = Column(JSON, nullable=True)
    photo_change = Column(JSON, nullable=True)
    poll_additional_metadata = Column(JSON, nullable=True)
    poll_updates = Column(JSON, nullable=True)
    push_name = Column(String(128), nullable=True)
    quoted_payment_info = Column(JSON, nullable=True)
    quoted_sticker_data = Column(JSON, nullable=True)
    reactions = Column(JSON, nullable=True)
    revoke_message_timestamp = Column(BigInteger, nullable=True)
    starred = Column(Boolean, nullable=True)
    status = Column(Integer, nullable=True)
    status_already_viewed = Column(Boolean, nullable=True)
    status_psa = Column(JSON, nullable=True)
    url_number = Column(Boolean, nullable=True)
    url_text = Column(Boolean, nullable=True)
    user_receipt = Column(JSON, nullable=True)
    verified_biz_name = Column(String(128), nullable=True)


class Chat(Base):
    """
    Chat rows are written by the chat store; messages only probe existence.

    Table: chats
    Unique: (session_id, id)
    """
    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint("session_id", "id", name="uq_chats_session_id"),
    )

    pk_id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(128), nullable=False, index=True)
    id = Column(String(128), nullable=False)
    name = Column(String(128), nullable=True)
    conversation_timestamp = Column(BigInteger, nullable=True)
    unread_count = Column(Integer, nullable=True)
    archived = Column(Boolean, nullable=True)
