"""
CRM Repositories
"""

from .lead_repository import LeadRepository
from .user_repository import UserRepository

__all__ = [
    "LeadRepository",
    "UserRepository",
]
