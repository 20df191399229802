"""
Audit Log Service.

Records pipeline events next to the state change they describe. Entries are
added to the caller's session and flushed, never committed here, so an entry
lands in the same transaction as the change it records.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from .audit_models import AuditLogModel


class AuditService:
    """Service for managing audit log entries.

    Usage:
        audit = AuditService(db_session)
        audit.log_status_change("GeneratedCertificate", cert.id, "pending", "generating",
                                actor_id="worker-1a2b3c4d")
    """

    def __init__(self, db: Session):
        self.db = db

    def _add(
        self,
        action: str,
        entity_kind: str,
        entity_id: int,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        actor_kind: str,
        actor_id: str,
        note: Optional[str],
    ) -> AuditLogModel:
        entry = AuditLogModel(
            ts=datetime.now(timezone.utc),
            actor_kind=actor_kind,
            actor_id=actor_id,
            action=action,
            entity_kind=entity_kind,
            entity_id=int(entity_id),
            before=before,
            after=after,
            note=note,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def log_create(
        self,
        entity_kind: str,
        entity_id: int,
        after: Dict[str, Any],
        actor_kind: str = "system",
        actor_id: str = "unknown",
        note: Optional[str] = None,
    ) -> AuditLogModel:
        """Log the creation of an entity."""
        return self._add("created", entity_kind, entity_id, None, after, actor_kind, actor_id, note)

    def log_update(
        self,
        entity_kind: str,
        entity_id: int,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor_kind: str = "system",
        actor_id: str = "unknown",
        note: Optional[str] = None,
    ) -> AuditLogModel:
        """Log an update to an entity."""
        return self._add("updated", entity_kind, entity_id, before, after, actor_kind, actor_id, note)

    def log_status_change(
        self,
        entity_kind: str,
        entity_id: int,
        old_status: str,
        new_status: str,
        actor_kind: str = "system",
        actor_id: str = "unknown",
        note: Optional[str] = None,
    ) -> AuditLogModel:
        """Log a status change on an entity.

        Args:
            entity_kind: Type of entity ("GeneratedCertificate", "Template")
            entity_id: ID of the entity
            old_status: Previous status value
            new_status: New status value
            actor_kind: "human" for admin actions, "system" for workers
            actor_id: ID of the actor
            note: Optional human-readable note

        Returns:
            The created AuditLogModel
        """
        return self._add(
            "status_changed",
            entity_kind,
            entity_id,
            {"status": old_status},
            {"status": new_status},
            actor_kind,
            actor_id,
            note or f"Status changed: {old_status} -> {new_status}",
        )

    def log_number_allocated(
        self,
        certificate_id: int,
        registration_number: str,
        actor_id: str = "unknown",
    ) -> AuditLogModel:
        """Log the registration number assigned to a certificate."""
        return self._add(
            "number_allocated",
            "GeneratedCertificate",
            certificate_id,
            None,
            {"registration_number": registration_number},
            "system",
            actor_id,
            f"Registration number {registration_number} allocated",
        )

    # Query methods

    def query_by_entity(
        self,
        entity_kind: str,
        entity_id: int,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogModel]:
        """Get audit history for a specific entity, newest first."""
        return (
            self.db.query(AuditLogModel)
            .filter(
                AuditLogModel.entity_kind == entity_kind,
                AuditLogModel.entity_id == int(entity_id),
            )
            .order_by(desc(AuditLogModel.ts), desc(AuditLogModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def query_by_action(
        self,
        action: str,
        entity_kind: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogModel]:
        """Get all audit entries for a specific action type, newest first."""
        query = self.db.query(AuditLogModel).filter(AuditLogModel.action == action)

        if entity_kind:
            query = query.filter(AuditLogModel.entity_kind == entity_kind)

        return (
            query.order_by(desc(AuditLogModel.ts), desc(AuditLogModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )
