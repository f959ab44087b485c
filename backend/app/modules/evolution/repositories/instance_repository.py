"""
Evolution Instance Repository
Database operations for the evolution_instances table.

Metadata updates are always merged into the stored JSON, never replaced.
"""
from typing import Optional, List, Dict, Any
from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.evolution.models.evolution_instance import EvolutionInstance
from app.shared.utils.json_utils import merge_json, as_json_object


def _to_dict(instance: EvolutionInstance) -> dict:
    data = {k: v for k, v in instance.__dict__.items() if not k.startswith('_')}
    data["instance_metadata"] = as_json_object(data.get("instance_metadata"))
    return data


class EvolutionInstanceRepository:
    """Repository for Evolution instance CRUD operations."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ============================================
    # READ OPERATIONS
    # ============================================

    async def get_latest_for_user(self, user_id: str) -> Optional[dict]:
        """The tenant's current instance: most recently created."""
        query = (
            select(EvolutionInstance)
            .where(EvolutionInstance.user_id == user_id)
            .order_by(EvolutionInstance.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        instance = result.scalar_one_or_none()
        return _to_dict(instance) if instance else None

    async def get_by_instance_id(self, instance_id: str) -> Optional[dict]:
        query = select(EvolutionInstance).where(EvolutionInstance.instance_id == instance_id)
        result = await self.db.execute(query)
        instance = result.scalar_one_or_none()
        return _to_dict(instance) if instance else None

    async def get_for_user(self, user_id: str, instance_key: str) -> Optional[dict]:
        """Tenant-scoped lookup by our instance id or the provider's id."""
        query = (
            select(EvolutionInstance)
            .where(
                EvolutionInstance.user_id == user_id,
                or_(
                    EvolutionInstance.instance_id == instance_key,
                    EvolutionInstance.provider_instance_id == instance_key,
                )
            )
            .order_by(EvolutionInstance.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        instance = result.scalar_one_or_none()
        return _to_dict(instance) if instance else None

    async def find_by_event_instance(self, name: str) -> Optional[dict]:
        """
        Cross-tenant lookup for webhook tenant resolution.

        The provider echoes either its own id or the name we registered, so
        match provider_instance_id, instance_id and the displayName /
        instanceName keys stored in metadata.
        """
        metadata = EvolutionInstance.instance_metadata
        query = (
            select(EvolutionInstance)
            .where(
                or_(
                    EvolutionInstance.provider_instance_id == name,
                    EvolutionInstance.instance_id == name,
                    metadata["displayName"].astext == name,
                    metadata["instanceName"].astext == name,
                )
            )
            .order_by(EvolutionInstance.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        instance = result.scalar_one_or_none()
        return _to_dict(instance) if instance else None

    async def find_by_display_name(self, user_id: str, display_name: str) -> Optional[dict]:
        query = (
            select(EvolutionInstance)
            .where(
                EvolutionInstance.user_id == user_id,
                EvolutionInstance.instance_metadata["displayName"].astext == display_name,
            )
            .limit(1)
        )
        result = await self.db.execute(query)
        instance = result.scalar_one_or_none()
        return _to_dict(instance) if instance else None

    async def list_for_user(self, user_id: str, oldest_first: bool = False) -> List[dict]:
        """All tenant instances, most recently touched first (or by creation when oldest_first)."""
        order = EvolutionInstance.created_at.asc() if oldest_first else EvolutionInstance.updated_at.desc()
        query = (
            select(EvolutionInstance)
            .where(EvolutionInstance.user_id == user_id)
            .order_by(order)
        )
        result = await self.db.execute(query)
        return [_to_dict(i) for i in result.scalars().all()]

    async def get_used_slot_ids(self, user_id: str) -> List[str]:
        """Slot ids already bound to the tenant's instances."""
        slot = EvolutionInstance.instance_metadata["slotId"].astext
        query = select(slot).where(EvolutionInstance.user_id == user_id, slot.isnot(None))
        result = await self.db.execute(query)
        return [row[0] for row in result.all() if row[0]]

    async def find_owner(
        self,
        instance_id: Optional[str] = None,
        provider_instance_id: Optional[str] = None,
        phone_number: Optional[str] = None
    ) -> Optional[dict]:
        """Most recently updated instance matching any of the given keys."""
        conditions = []
        if instance_id:
            conditions.append(EvolutionInstance.instance_id == instance_id)
        if provider_instance_id:
            conditions.append(EvolutionInstance.provider_instance_id == provider_instance_id)
        if phone_number:
            conditions.append(EvolutionInstance.instance_metadata["number"].astext == phone_number)
        if not conditions:
            return None

        query = (
            select(EvolutionInstance)
            .where(or_(*conditions))
            .order_by(EvolutionInstance.updated_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        instance = result.scalar_one_or_none()
        return _to_dict(instance) if instance else None

    # ============================================
    # CREATE OPERATIONS
    # ============================================

    async def create_instance(
        self,
        user_id: str,
        instance_id: str,
        status: str,
        provider_instance_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        connected_at=None
    ) -> dict:
        instance = EvolutionInstance(
            user_id=user_id,
            instance_id=instance_id,
            provider_instance_id=provider_instance_id,
            status=status,
            connected_at=connected_at,
            instance_metadata=metadata or {}
        )

        self.db.add(instance)
        await self.db.flush()  # Flush to get ID, let service manage commit
        await self.db.refresh(instance)

        return _to_dict(instance)

    # ============================================
    # UPDATE OPERATIONS
    # ============================================

    async def update_instance(
        self,
        pk: int,
        values: Optional[Dict[str, Any]] = None,
        metadata_patch: Optional[Dict[str, Any]] = None
    ) -> Optional[dict]:
        """
        Apply column values and merge a metadata patch.

        Args:
            pk: Row id
            values: Column attribute -> value (status, connected_at, provider_instance_id...)
            metadata_patch: Keys merged over the stored metadata
        """
        instance = await self.db.get(EvolutionInstance, pk)
        if not instance:
            return None

        for key, value in (values or {}).items():
            setattr(instance, key, value)

        if metadata_patch:
            # New dict so the JSONB change is detected
            instance.instance_metadata = merge_json(instance.instance_metadata, metadata_patch)

        await self.db.flush()
        await self.db.refresh(instance)
        return _to_dict(instance)

    # ============================================
    # DELETE OPERATIONS
    # ============================================

    async def delete_instance(self, pk: int) -> int:
        stmt = delete(EvolutionInstance).where(EvolutionInstance.id == pk)
        result = await self.db.execute(stmt)
        return result.rowcount or 0
