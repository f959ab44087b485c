"""
Lead ORM Model
SQLAlchemy model representing the 'leads' table.

One lead per contact phone per tenant. Leads are created automatically on the
first inbound WhatsApp message from an unseen number.
"""
from sqlalchemy import Column, BigInteger, Text, Integer, ForeignKey, Index
from app.shared.db.base import Base, TimestampMixin


class Lead(Base, TimestampMixin):
    """ORM Model for the leads table."""
    __tablename__ = "leads"

    id = Column(BigInteger, primary_key=True)
    user_id = Column(Text, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    # ============================================
    # IDENTITY
    # ============================================
    name = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    contact = Column(Text, nullable=True)      # Canonical phone digits

    # ============================================
    # FUNNEL
    # ============================================
    source = Column(Text, nullable=True)       # 'WhatsApp', 'Manual', ...
    stage = Column(Text, nullable=False, default='Novo')
    score = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_leads_user_contact', 'user_id', 'contact'),
        Index('idx_leads_stage', 'stage'),
    )

    def __repr__(self):
        return f"<Lead(id={self.id}, user_id='{self.user_id}', contact='{self.contact}', stage='{self.stage}')>"
