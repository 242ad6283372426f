"""Audit trail of typed events."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gigmarket.models.audit_log import AuditLog
from gigmarket.services.events import Event, encode_event

logger = logging.getLogger(__name__)


def log_audit(
    db: AsyncSession,
    event: Event,
    *,
    actor: str | None = None,
    entity_type: str = "order",
    entity_id: int | None = None,
) -> AuditLog:
    """Stage an audit entry for ``event``.

    The entry is committed together with the command that produced it, so a
    rejected command leaves no audit trail behind.
    """
    entry = AuditLog(
        actor=actor,
        action=event.kind,
        entity_type=entity_type,
        entity_id=event.order_id if entity_id is None else entity_id,
        details=encode_event(event),
    )
    db.add(entry)
    logger.debug("Audit %s %s/%s by %s", event.kind, entity_type, entry.entity_id, actor)
    return entry
