"""
Webhook Record Repository
Database operations for the webhooks audit table.
"""
from typing import Optional, Dict, Any
from sqlalchemy import update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.evolution.models.webhook_record import WebhookRecord
from app.modules.evolution.constants import WebhookRecordStatus


class WebhookRecordRepository:
    """Repository for webhook audit rows."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create_record(
        self,
        user_id: str,
        event: str,
        raw_json: Optional[Dict[str, Any]] = None,
        jsonrow: Optional[Dict[str, Any]] = None,
        instance_id: Optional[str] = None,
        provider_instance_id: Optional[str] = None,
        slot_id: Optional[str] = None,
        wamid: Optional[str] = None,
        phone_raw: Optional[str] = None,
        received_at=None,
        status: str = WebhookRecordStatus.PENDING.value
    ) -> dict:
        record = WebhookRecord(
            user_id=user_id,
            event=event,
            raw_json=raw_json,
            jsonrow=jsonrow,
            instance_id=instance_id,
            provider_instance_id=provider_instance_id,
            slot_id=slot_id,
            wamid=wamid,
            phone_raw=phone_raw,
            received_at=received_at,
            status=status,
            attempts=0
        )

        self.db.add(record)
        await self.db.flush()  # Flush to get ID, let service manage commit
        await self.db.refresh(record)

        return {k: v for k, v in record.__dict__.items() if not k.startswith('_')}

    async def set_outbound(self, record_id: int, url: str, outbound_json: Dict[str, Any]):
        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == record_id)
            .values(outbound_url=url, outbound_json=outbound_json)
        )
        await self.db.execute(stmt)

    async def mark_sent(self, record_id: int, attempts: int):
        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == record_id)
            .values(
                status=WebhookRecordStatus.SENT.value,
                attempts=attempts,
                last_error=None,
                sent_at=func.now()
            )
        )
        await self.db.execute(stmt)

    async def mark_failed(self, record_id: int, attempts: int, error: Optional[str]):
        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == record_id)
            .values(
                status=WebhookRecordStatus.FAILED.value,
                attempts=attempts,
                last_error=(error or "")[:1000] or None
            )
        )
        await self.db.execute(stmt)

    async def mark_skipped(self, record_id: int):
        stmt = (
            update(WebhookRecord)
            .where(WebhookRecord.id == record_id)
            .values(status=WebhookRecordStatus.SKIPPED.value)
        )
        await self.db.execute(stmt)
