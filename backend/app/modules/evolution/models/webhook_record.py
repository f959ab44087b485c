"""
Webhook Record ORM Model
SQLAlchemy model representing the 'webhooks' table.

Append-only audit log of every provider event received and of the relay
sent to the automation endpoint for it. One row per received event; relay
attempts update the same row.
"""
from sqlalchemy import Column, BigInteger, Integer, Text, DateTime, Index, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from app.shared.db.base import Base, TimestampMixin


class WebhookRecord(Base, TimestampMixin):
    """ORM Model for the webhooks table."""
    __tablename__ = "webhooks"

    id = Column(BigInteger, primary_key=True)
    user_id = Column(Text, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    # ============================================
    # EVENT
    # ============================================
    event = Column(Text, nullable=False)             # Normalized: messages.upsert, chats.update...
    instance_id = Column(Text, nullable=True)
    provider_instance_id = Column(Text, nullable=True)
    slot_id = Column(Text, nullable=True)
    wamid = Column(Text, nullable=True)
    phone_raw = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)

    # ============================================
    # PAYLOADS (secrets redacted)
    # ============================================
    raw_json = Column(JSONB, nullable=True)
    jsonrow = Column(JSONB, nullable=True)           # Flat projection sent to automation

    # ============================================
    # RELAY
    # ============================================
    outbound_url = Column(Text, nullable=True)
    outbound_json = Column(JSONB, nullable=True)
    status = Column(Text, nullable=False, default='pending')  # pending | sent | failed | skipped
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_webhooks_user_event', 'user_id', 'event'),
        Index('idx_webhooks_status', 'status'),
        Index('idx_webhooks_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<WebhookRecord(id={self.id}, event='{self.event}', status='{self.status}')>"
