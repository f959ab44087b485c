"""
WhatsApp Message ORM Model
SQLAlchemy model representing the 'whatsapp_messages' table.

Stores inbound and outbound WhatsApp messages seen through Evolution.
`wamid` is the idempotency key: provider redeliveries and client resends
upsert the same row.
"""
from sqlalchemy import Column, BigInteger, Text, Boolean, DateTime, Index, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from app.shared.db.base import Base, TimestampMixin


class WhatsAppMessage(Base, TimestampMixin):
    """
    ORM Model for the whatsapp_messages table.

    Outbound rows created by the dispatcher carry a `client-` prefixed wamid.
    Inbound rows carry the provider's message id.
    """
    __tablename__ = "whatsapp_messages"

    id = Column(BigInteger, primary_key=True)
    user_id = Column(Text, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    # ============================================
    # PROVIDER KEY
    # ============================================
    wamid = Column(Text, nullable=False, unique=True)
    remote_jid = Column(Text, nullable=True)
    remote_jid_alt = Column(Text, nullable=True)     # Phone JID for "lid" addressed chats
    phone_raw = Column(Text, nullable=True)          # Canonical digits
    addressing_mode = Column(Text, nullable=True)
    participant = Column(Text, nullable=True)
    sender = Column(Text, nullable=True)             # Envelope body.sender (our number)

    # ============================================
    # CONTENT
    # ============================================
    from_me = Column(Boolean, nullable=False, default=False)
    direction = Column(Text, nullable=False)         # INBOUND | OUTBOUND
    message_type = Column(Text, nullable=True)       # conversation, imageMessage, text, media...
    conversation = Column(Text, nullable=True)
    caption = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)
    push_name = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=True)

    # ============================================
    # DELIVERY
    # ============================================
    delivery_status = Column(Text, nullable=True)    # QUEUED, SENT, DELIVERED, READ, FAILED

    # ============================================
    # AD ATTRIBUTION (Click-to-WhatsApp)
    # ============================================
    is_ad = Column(Boolean, nullable=False, default=False)
    ad_source_type = Column(Text, nullable=True)
    ad_source_id = Column(Text, nullable=True)
    ad_source_url = Column(Text, nullable=True)
    ctwa_clid = Column(Text, nullable=True)
    ad_title = Column(Text, nullable=True)
    ad_body = Column(Text, nullable=True)
    ad_thumbnail_url = Column(Text, nullable=True)
    conversion_source = Column(Text, nullable=True)

    # ============================================
    # HASHED PII (SHA-256 of lowercased, trimmed values)
    # ============================================
    hashed_phone = Column(Text, nullable=True)
    hashed_first_name = Column(Text, nullable=True)
    hashed_last_name = Column(Text, nullable=True)
    hashed_email = Column(Text, nullable=True)

    # ============================================
    # LINKS & RAW
    # ============================================
    external_id = Column(Text, nullable=True)        # Lead id once linked
    raw_json = Column(JSONB, nullable=True)          # Secrets redacted

    __table_args__ = (
        Index('idx_whatsapp_messages_user_phone_ts', 'user_id', 'phone_raw', 'timestamp'),
        Index('idx_whatsapp_messages_user_updated', 'user_id', 'updated_at'),
        Index('idx_whatsapp_messages_remote_jid', 'remote_jid'),
    )

    def __repr__(self):
        return f"<WhatsAppMessage(id={self.id}, wamid='{self.wamid}', direction='{self.direction}', status='{self.delivery_status}')>"
