from __future__ import annotations

from typing import Any, Optional

from . import models, schemas
from .clock import Clock, normalize_dt, utcnow
from .logging_utils import log_event
from .repositories import AuditRepository, check_page, paginate


class AuditTrail:
    """Append-only record of every state-changing call in the engine."""

    def __init__(self, repo: AuditRepository, clock: Clock = utcnow):
        self.repo = repo
        self.clock = clock

    def record(
        self,
        *,
        action_type: str,
        target_type: str,
        target_identifier: Any,
        actor_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        created_by_system: bool = False,
    ) -> models.AuditLogEntry:
        entry = models.AuditLogEntry(
            actor_id=actor_id,
            action_type=action_type,
            target_type=target_type,
            target_identifier=str(target_identifier),
            details=details,
            created_by_system=created_by_system,
            created_at=self.clock(),
        )
        # Flushed with the triggering mutation; a failure here fails the whole operation.
        self.repo.add(entry)
        log_event(
            "audit_recorded",
            audit_id=entry.id,
            action_type=action_type,
            target_type=target_type,
            target_identifier=entry.target_identifier,
            actor_id=actor_id,
        )
        return entry

    def search(
        self,
        filters: schemas.AuditFilter,
        page: schemas.PageRequest,
        *,
        viewer: schemas.Actor,
    ) -> schemas.Page[schemas.AuditEntryResponse]:
        query = self.repo.query()
        if filters.actor_id is not None:
            query = query.filter(models.AuditLogEntry.actor_id == filters.actor_id)
        if filters.action_type:
            query = query.filter(models.AuditLogEntry.action_type == filters.action_type)
        if filters.target_type:
            query = query.filter(models.AuditLogEntry.target_type == filters.target_type)
        if filters.target_identifier:
            query = query.filter(models.AuditLogEntry.target_identifier == filters.target_identifier)
        if filters.created_from:
            query = query.filter(models.AuditLogEntry.created_at >= normalize_dt(filters.created_from))
        if filters.created_to:
            query = query.filter(models.AuditLogEntry.created_at <= normalize_dt(filters.created_to))
        query = query.order_by(models.AuditLogEntry.created_at.desc(), models.AuditLogEntry.id.desc())

        check_page(page)
        rows, total = paginate(query, page.page, page.page_size)
        items = []
        for row in rows:
            item = schemas.AuditEntryResponse.model_validate(row)
            if not viewer.is_admin:
                # details may carry rationale and evidence references
                item.details = None
            items.append(item)
        return schemas.Page[schemas.AuditEntryResponse](
            items=items, total=total, page=page.page, page_size=page.page_size
        )


