"""
Evolution Instance ORM Model
SQLAlchemy model representing the 'evolution_instances' table.

One row per tenant-managed WhatsApp connection on the Evolution provider.
The `metadata` JSONB column is the merged source of truth for cached QR
artifacts, last seen provider state, profile info and webhook slot binding.
"""
from sqlalchemy import Column, BigInteger, Text, DateTime, Index, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from app.shared.db.base import Base, TimestampMixin


class EvolutionInstance(Base, TimestampMixin):
    """
    ORM Model for the evolution_instances table.

    instance_id is the name we gave the provider (tenant-scoped, stable).
    provider_instance_id is learned from provider responses and may stay NULL.
    """
    __tablename__ = "evolution_instances"

    id = Column(BigInteger, primary_key=True)
    user_id = Column(Text, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    # ============================================
    # IDENTIFIERS
    # ============================================
    instance_id = Column(Text, nullable=False, unique=True)
    provider_instance_id = Column(Text, nullable=True)

    # ============================================
    # LIFECYCLE
    # ============================================
    status = Column(Text, nullable=False, default='disconnected')  # disconnected | pending | connected
    connected_at = Column(DateTime(timezone=True), nullable=True)

    # `metadata` is reserved on declarative classes
    instance_metadata = Column("metadata", JSONB, nullable=True, server_default='{}')
    # Example metadata:
    # { "displayName": "clinic-01", "lastState": "open", "lastQrBase64": "...",
    #   "requestedNumber": "5511999999999", "slotId": "slot1", "token": "..." }

    __table_args__ = (
        Index('idx_evolution_instances_user_created', 'user_id', 'created_at'),
        Index('idx_evolution_instances_provider_id', 'provider_instance_id'),
    )

    def __repr__(self):
        return f"<EvolutionInstance(id={self.id}, instance_id='{self.instance_id}', status='{self.status}')>"
