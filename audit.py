"""Append-only audit trail for privileged actions."""
import logging
from typing import List, Optional

from pydantic import TypeAdapter
from sqlalchemy import select

from database import Database
from models import AuditLogEntry
from schemas import AuditMetadata

logger = logging.getLogger(__name__)

USER_DELETED = "USER_DELETED"
USER_INVITED = "USER_INVITED"
USER_UPDATED = "USER_UPDATED"
SUB_ADMIN_CREATED = "SUB_ADMIN_CREATED"

_metadata_adapter = TypeAdapter(AuditMetadata)


async def log_action(
    db: Database,
    action: str,
    description: str,
    metadata: AuditMetadata,
    actor_id: Optional[int] = None,
) -> Optional[AuditLogEntry]:
    """
    Append an audit entry in its own session.
    Never raises: a failed write is logged and the caller carries on.
    """
    try:
        payload = _metadata_adapter.dump_python(
            _metadata_adapter.validate_python(metadata), mode="json"
        )
        async with db.session() as session:
            entry = AuditLogEntry(
                action=action,
                description=description,
                meta=payload,
                actor_id=actor_id,
            )
            session.add(entry)
            await session.commit()
        logger.info(f"Audit: {action} - {description}")
        return entry
    except Exception as e:
        logger.error(f"Audit log write failed for {action}: {str(e)}", exc_info=True)
        return None


async def recent_entries(db: Database, limit: int = 100) -> List[AuditLogEntry]:
    async with db.session() as session:
        result = await session.execute(
            select(AuditLogEntry)
            .order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
