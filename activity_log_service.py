"""
Activity Log Service - Append-only audit trail for the membership lifecycle
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Dict, Any, List
import json
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import ActivityLog

log = logging.getLogger(__name__)


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


def _positive_id(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    value = int(value)
    return value if value > 0 else None


class ActivityLogger:
    """Writes audit rows into the caller's session.

    Rows are committed together with the caller's unit of work; use
    ``commit=True`` for events that must survive a rollback path (failures).
    """

    @staticmethod
    async def log_event(
        db: AsyncSession,
        event_type: str,
        context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None,
        application_id: Optional[int] = None,
        member_id: Optional[int] = None,
        commit: bool = False,
    ) -> Optional[ActivityLog]:
        event_type = (event_type or "").strip()
        if not event_type:
            return None

        entry = ActivityLog(
            event_type=event_type,
            context=_json_safe(context or {}),
            actor_user_id=_positive_id(actor_id),
            application_id=_positive_id(application_id),
            member_id=_positive_id(member_id),
        )
        db.add(entry)
        if commit:
            await db.commit()

        log.info(f"AUDIT: {json.dumps({'event': event_type, 'application_id': entry.application_id, 'member_id': entry.member_id, 'actor': entry.actor_user_id, 'context': entry.context})}")
        return entry

    @staticmethod
    async def log_application_event(
        db: AsyncSession,
        application_id: int,
        event_type: str,
        context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None,
        commit: bool = False,
    ) -> Optional[ActivityLog]:
        return await ActivityLogger.log_event(
            db, event_type, context, actor_id=actor_id, application_id=application_id, commit=commit
        )

    @staticmethod
    async def log_member_event(
        db: AsyncSession,
        member_id: int,
        event_type: str,
        context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None,
        application_id: Optional[int] = None,
        commit: bool = False,
    ) -> Optional[ActivityLog]:
        return await ActivityLogger.log_event(
            db, event_type, context, actor_id=actor_id, application_id=application_id,
            member_id=member_id, commit=commit
        )

    @staticmethod
    async def log_system_event(
        db: AsyncSession,
        event_type: str,
        context: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None,
        commit: bool = False,
    ) -> Optional[ActivityLog]:
        return await ActivityLogger.log_event(db, event_type, context, actor_id=actor_id, commit=commit)

    @staticmethod
    async def entries_for(
        db: AsyncSession,
        application_id: Optional[int] = None,
        member_id: Optional[int] = None,
        event_type: Optional[str] = None,
    ) -> List[ActivityLog]:
        """Read the trail in insertion order."""
        await db.flush()
        query = select(ActivityLog)
        if application_id is not None:
            query = query.where(ActivityLog.application_id == application_id)
        if member_id is not None:
            query = query.where(ActivityLog.member_id == member_id)
        if event_type is not None:
            query = query.where(ActivityLog.event_type == event_type)
        result = await db.execute(query.order_by(ActivityLog.id))
        return list(result.scalars().all())
