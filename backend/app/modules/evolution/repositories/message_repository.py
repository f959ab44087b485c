"""
WhatsApp Message Repository
Database operations for the whatsapp_messages table.

`wamid` is unique: writes go through a PostgreSQL upsert so concurrent
redeliveries of the same provider event converge to a single row.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable
from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.evolution.models.whatsapp_message import WhatsAppMessage


def _contact_filter(phone: str, remote_jid: str):
    return or_(
        WhatsAppMessage.phone_raw == phone,
        WhatsAppMessage.remote_jid == remote_jid,
        WhatsAppMessage.remote_jid_alt == remote_jid,
    )


class WhatsAppMessageRepository:
    """Repository for WhatsApp message operations."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ============================================
    # READ OPERATIONS
    # ============================================

    async def get_by_wamid(self, wamid: str) -> Optional[dict]:
        query = select(WhatsAppMessage).where(WhatsAppMessage.wamid == wamid)
        result = await self.db.execute(query)
        message = result.scalar_one_or_none()

        if message:
            return {k: v for k, v in message.__dict__.items() if not k.startswith('_')}
        return None

    async def list_conversation(
        self,
        user_id: str,
        phone: str,
        remote_jid: str,
        direction: Optional[str] = None,
        limit: int = 50
    ) -> List[dict]:
        """
        Latest `limit` messages with a contact, returned oldest first.
        """
        conditions = [
            WhatsAppMessage.user_id == user_id,
            _contact_filter(phone, remote_jid),
        ]
        if direction:
            conditions.append(WhatsAppMessage.direction == direction)

        query = (
            select(WhatsAppMessage)
            .where(*conditions)
            .order_by(WhatsAppMessage.timestamp.desc().nullslast(), WhatsAppMessage.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        messages = [{k: v for k, v in m.__dict__.items() if not k.startswith('_')} for m in result.scalars().all()]
        messages.reverse()
        return messages

    async def list_updates(
        self,
        user_id: str,
        phone: str,
        remote_jid: str,
        after_timestamp: Optional[datetime] = None,
        after_updated_at: Optional[datetime] = None,
        limit: int = 50
    ) -> List[dict]:
        """
        Messages created or changed after the cursor, oldest first.
        A message counts as new if either its provider timestamp or its row
        update time is past the matching cursor.
        """
        conditions = [
            WhatsAppMessage.user_id == user_id,
            _contact_filter(phone, remote_jid),
        ]
        cursor_conditions = []
        if after_timestamp is not None:
            cursor_conditions.append(WhatsAppMessage.timestamp > after_timestamp)
        if after_updated_at is not None:
            cursor_conditions.append(WhatsAppMessage.updated_at > after_updated_at)
        if cursor_conditions:
            conditions.append(or_(*cursor_conditions))

        query = (
            select(WhatsAppMessage)
            .where(and_(*conditions))
            .order_by(WhatsAppMessage.timestamp.asc(), WhatsAppMessage.updated_at.asc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return [{k: v for k, v in m.__dict__.items() if not k.startswith('_')} for m in result.scalars().all()]

    async def list_recent(self, user_id: str, limit: int) -> List[dict]:
        """Most recent messages for a tenant (chat list source)."""
        query = (
            select(WhatsAppMessage)
            .where(WhatsAppMessage.user_id == user_id)
            .order_by(WhatsAppMessage.timestamp.desc().nullslast(), WhatsAppMessage.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return [{k: v for k, v in m.__dict__.items() if not k.startswith('_')} for m in result.scalars().all()]

    # ============================================
    # WRITE OPERATIONS
    # ============================================

    def build_upsert(self, values: Dict[str, Any], update_fields: Iterable[str]):
        """
        INSERT ... ON CONFLICT (wamid) DO UPDATE for the given row values.

        Only `update_fields` are overwritten on conflict, so identity fields
        written by the first event survive later enrichment.
        """
        stmt = insert(WhatsAppMessage).values(**values)
        set_ = {field: stmt.excluded[field] for field in update_fields if field in values}
        set_["updated_at"] = func.now()
        return stmt.on_conflict_do_update(
            index_elements=[WhatsAppMessage.wamid],
            set_=set_
        ).returning(WhatsAppMessage.id, WhatsAppMessage.wamid)

    async def upsert_message(self, values: Dict[str, Any], update_fields: Iterable[str]) -> Dict[str, Any]:
        """Upsert by wamid. Returns {"id", "wamid"}."""
        stmt = self.build_upsert(values, update_fields)
        result = await self.db.execute(stmt)
        row = result.one()
        # No commit - let service layer manage transaction
        return {"id": row[0], "wamid": row[1]}

    async def update_by_wamid(self, wamid: str, values: Dict[str, Any], user_id: Optional[str] = None) -> int:
        """Update a message by wamid. Returns the number of matched rows."""
        conditions = [WhatsAppMessage.wamid == wamid]
        if user_id:
            conditions.append(WhatsAppMessage.user_id == user_id)

        stmt = (
            update(WhatsAppMessage)
            .where(*conditions)
            .values(**values, updated_at=func.now())
        )
        result = await self.db.execute(stmt)
        return result.rowcount or 0

    async def link_lead(self, wamid: str, external_id: str, hashed_email: Optional[str] = None) -> int:
        """
        Attach the originating lead, only if none is linked yet.
        The lead's hashed email fills hashed_email when the row has none.
        """
        values: Dict[str, Any] = {"external_id": external_id}
        if hashed_email:
            values["hashed_email"] = func.coalesce(WhatsAppMessage.hashed_email, hashed_email)

        stmt = (
            update(WhatsAppMessage)
            .where(WhatsAppMessage.wamid == wamid, WhatsAppMessage.external_id.is_(None))
            .values(**values)
        )
        result = await self.db.execute(stmt)
        return result.rowcount or 0
