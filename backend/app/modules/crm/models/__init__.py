"""
CRM Models

Tenants and leads consumed by the WhatsApp core.
"""

from .user import Company, User
from .lead import Lead

__all__ = [
    "Company",
    "User",
    "Lead",
]
