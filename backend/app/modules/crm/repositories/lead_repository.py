"""
Lead Repository
Database operations for the leads table.

Only the operations the WhatsApp core needs: lookup by (tenant, contact),
first-contact creation and name overlay for chat lists.
"""
from typing import Optional, List, Dict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.crm.models.lead import Lead

INITIAL_STAGE = "Novo"


class LeadRepository:
    """Repository for lead CRUD operations."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ============================================
    # READ OPERATIONS
    # ============================================

    async def get_by_contact(self, user_id: str, contact: str) -> Optional[dict]:
        """Fetch the tenant's lead for a canonical phone number."""
        query = (
            select(Lead)
            .where(Lead.user_id == user_id, Lead.contact == contact)
            .order_by(Lead.id.asc())
            .limit(1)
        )
        result = await self.db.execute(query)
        lead = result.scalar_one_or_none()

        if lead:
            return {k: v for k, v in lead.__dict__.items() if not k.startswith('_')}
        return None

    async def get_names_by_contacts(self, user_id: str, contacts: List[str]) -> Dict[str, str]:
        """contact -> lead name, for leads that have a non-blank name."""
        if not contacts:
            return {}

        query = select(Lead.contact, Lead.name).where(
            Lead.user_id == user_id,
            Lead.contact.in_(contacts)
        )
        result = await self.db.execute(query)

        names = {}
        for contact, name in result.all():
            if contact and name and name.strip():
                names[contact] = name.strip()
        return names

    # ============================================
    # CREATE OPERATIONS
    # ============================================

    async def create_lead(
        self,
        user_id: str,
        contact: str,
        name: Optional[str] = None,
        source: str = "WhatsApp",
        stage: str = INITIAL_STAGE,
        score: int = 0,
        notes: Optional[str] = None,
        email: Optional[str] = None
    ) -> dict:
        lead = Lead(
            user_id=user_id,
            contact=contact,
            name=name,
            source=source,
            stage=stage,
            score=score,
            notes=notes,
            email=email
        )

        self.db.add(lead)
        await self.db.flush()  # Flush to get ID, let service manage commit
        await self.db.refresh(lead)

        return {k: v for k, v in lead.__dict__.items() if not k.startswith('_')}
