"""
User (tenant) Repository
Read-only access to tenant rows for webhook resolution and relay enrichment.
"""
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.crm.models.user import User


class UserRepository:
    """Repository for tenant lookups."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get_by_id(self, user_id: str) -> Optional[dict]:
        """
        Tenant with its company flattened in:
        {id, api_key, company_name, company_id, company: {id, name} | None}
        """
        query = select(User).where(User.id == user_id)
        result = await self.db.execute(query)
        user = result.unique().scalar_one_or_none()

        if not user:
            return None

        data = {k: v for k, v in user.__dict__.items() if not k.startswith('_') and k != 'company'}
        data["company"] = {"id": user.company.id, "name": user.company.name} if user.company else None
        return data

    async def get_id_by_api_key(self, api_key: str) -> Optional[str]:
        """Tenant id owning an API key (used when a webhook's instance is unmapped)."""
        if not api_key:
            return None
        query = select(User.id).where(User.api_key == api_key).limit(1)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()
