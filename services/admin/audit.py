"""
services/admin/audit.py
Append-only admin audit trail. Every admin mutation records one row.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.middleware.auth import AuthContext
from shared.models.models import AdminAuditLog


def record_admin_action(
    db: AsyncSession,
    auth: AuthContext,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: Optional[dict] = None,
) -> AdminAuditLog:
    """Append an immutable record to AdminAuditLog (flushed with the surrounding work)."""
    log = AdminAuditLog(
        admin_id=auth.user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=auth.ip_address,
    )
    db.add(log)
    return log
