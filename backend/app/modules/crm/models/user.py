"""
Tenant ORM Models
SQLAlchemy models for the 'companies' and 'users' tables.

A user is the tenant: every instance, message, webhook record and lead is
scoped by user_id. Authentication lives outside this service; only the
columns the WhatsApp core reads are mapped here.
"""
from sqlalchemy import Column, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from app.shared.db.base import Base, TimestampMixin


class Company(Base, TimestampMixin):
    """ORM Model for the companies table."""
    __tablename__ = "companies"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)

    def __repr__(self):
        return f"<Company(id='{self.id}', name='{self.name}')>"


class User(Base, TimestampMixin):
    """
    ORM Model for the users table (tenants).

    api_key is echoed back by the provider inside webhook payloads, which makes
    it the last-resort way to find the tenant of an unmapped instance.
    """
    __tablename__ = "users"

    id = Column(Text, primary_key=True)
    email = Column(Text, nullable=True)
    api_key = Column(Text, unique=True, nullable=True)
    company_name = Column(Text, nullable=True)  # Free-text name when no company row exists
    company_id = Column(Text, ForeignKey('companies.id', ondelete='SET NULL'), nullable=True)

    company = relationship("Company", lazy="joined")

    __table_args__ = (
        Index('idx_users_company_id', 'company_id'),
    )

    def __repr__(self):
        return f"<User(id='{self.id}', company_id='{self.company_id}')>"
