"""
Audit trail for role, permission, grant and assignment mutations.

Entries are written inside the caller's transaction and flushed before the
commit, so a mutation and its audit entry either both land or neither does.
"""
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatbot_rbac.core import config
from chatbot_rbac.core.exceptions import AuditWriteFailed
from chatbot_rbac.features.permissions.context import ActorContext
from chatbot_rbac.features.permissions.models import AuditAction, AuditEntry
from chatbot_rbac.utils import get_logger, to_naive_utc


log = get_logger(__name__)


@dataclass
class AuditFilters:
    organization_id: Optional[str] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[str] = None
    since: Optional[datetime] = None  # inclusive
    until: Optional[datetime] = None  # exclusive


def jsonable(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a snapshot dict safe for a JSON column."""
    if values is None:
        return None
    result: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, dict):
            value = jsonable(value)
        result[key] = value
    return result


async def record(
    db: AsyncSession,
    *,
    actor: ActorContext,
    action: AuditAction | str,
    resource_type: str,
    resource_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    resource_name: Optional[str] = None,
    description: Optional[str] = None,
) -> AuditEntry:
    """
    Append an audit entry in the current transaction.

    Raises:
        AuditWriteFailed: the entry could not be written; callers must let it
            propagate so the triggering mutation is rolled back.
    """
    if isinstance(action, AuditAction):
        action = action.value

    entry = AuditEntry(
        organization_id=organization_id,
        actor_id=actor.actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_name=resource_name,
        old_values=jsonable(old_values),
        new_values=jsonable(new_values),
        description=description,
        ip_address=actor.ip_address,
        user_agent=(actor.user_agent or "")[:255] or None,
    )
    try:
        db.add(entry)
        await db.flush()
    except SQLAlchemyError as exc:
        log.error(f"Audit write failed for {action} {resource_type}:{resource_id}: {exc}")
        raise AuditWriteFailed(
            "Audit entry could not be written; change rolled back",
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
        ) from exc

    log.info(f"Audit: actor={actor.actor_id} action={action} resource={resource_type}:{resource_id} org={organization_id}")
    return entry


def _apply_filters(stmt, filters: AuditFilters):
    if filters.organization_id:
        stmt = stmt.where(AuditEntry.organization_id == filters.organization_id)
    if filters.actor_id:
        stmt = stmt.where(AuditEntry.actor_id == filters.actor_id)
    if filters.resource_type:
        stmt = stmt.where(AuditEntry.resource_type == filters.resource_type)
    if filters.resource_id:
        stmt = stmt.where(AuditEntry.resource_id == filters.resource_id)
    if filters.action:
        stmt = stmt.where(AuditEntry.action == filters.action)
    if filters.since:
        stmt = stmt.where(AuditEntry.created_at >= to_naive_utc(filters.since))
    if filters.until:
        stmt = stmt.where(AuditEntry.created_at < to_naive_utc(filters.until))
    return stmt


async def query_audit_entries(
    db: AsyncSession,
    filters: Optional[AuditFilters] = None,
    skip: int = 0,
    limit: int = config.AUDIT_PAGE_SIZE,
) -> tuple[List[AuditEntry], int]:
    """Return one page of entries (newest first) and the total match count."""
    filters = filters or AuditFilters()
    stmt = _apply_filters(select(AuditEntry), filters)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(AuditEntry.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all()), total


async def iter_audit_entries(
    db: AsyncSession,
    filters: Optional[AuditFilters] = None,
    page_size: int = config.AUDIT_PAGE_SIZE,
) -> AsyncIterator[AuditEntry]:
    """
    Lazily yield matching entries, newest first.

    Pages are fetched on demand with keyset pagination on the entry id, so
    entries appended while iterating never shift or repeat a page.
    """
    filters = filters or AuditFilters()
    before_id: Optional[int] = None
    while True:
        stmt = _apply_filters(select(AuditEntry), filters)
        if before_id is not None:
            stmt = stmt.where(AuditEntry.id < before_id)
        stmt = stmt.order_by(AuditEntry.id.desc()).limit(page_size)
        page = list((await db.execute(stmt)).scalars().all())
        for entry in page:
            yield entry
        if len(page) < page_size:
            return
        before_id = page[-1].id
