"""
Certificate history.

One row per recorded event on a generated certificate or a template: its
creation, a status change, a registration number being burnt, or an admin
edit such as re-converting a document. ``before``/``after`` hold only the
fields the event touched.
"""

from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.sql import func

from .base import Base
from .models import _iso

ENTITY_KINDS = ("GeneratedCertificate", "Template")

audit_entity_kind_enum = Enum(*ENTITY_KINDS, name="audit_entity_kind")

audit_action_enum = Enum(
    "created",
    "updated",
    "status_changed",
    "number_allocated",
    name="audit_action",
)

audit_actor_kind_enum = Enum("human", "system", name="audit_actor_kind")


class AuditLogModel(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)

    entity_kind = Column(audit_entity_kind_enum, nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(audit_action_enum, nullable=False, index=True)

    # Worker lease id, "cli", or the admin user
    actor_id = Column(String(100), nullable=False, index=True)
    actor_kind = Column(audit_actor_kind_enum, nullable=False)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_kind", "entity_id"),
        Index("ix_audit_log_entity_ts", "entity_kind", "entity_id", "ts"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_kind": self.actor_kind,
            "before": self.before,
            "after": self.after,
            "note": self.note,
            "ts": _iso(self.ts),
        }
