"""
Generation state machine for GeneratedCertificate rows.

    pending -> generating -> ready -> delivered
                    |  ^
                    v  |
                   failed

Every transition is a single conditional UPDATE guarded by the current
status. Whoever gets rowcount 1 owns the transition; everyone else lost a
race and must not act on the row.

While a row is ``generating`` the worker working on it holds a lease
(``claimed_by``/``claimed_at``). Progress writes are guarded by the lease so
a worker whose lease was reclaimed cannot overwrite a newer attempt.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.models import GeneratedCertificateModel
from ..errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class CertificateStatus(str, enum.Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"
    DELIVERED = "delivered"


ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"generating"}),
    "generating": frozenset({"ready", "failed"}),
    "failed": frozenset({"generating"}),
    "ready": frozenset({"delivered"}),
    "delivered": frozenset(),
}

# Statuses a worker or admin can start an attempt from
CLAIMABLE_STATUSES = ("pending", "failed")

STUDENT_LABELS = {
    "pending": "Generation in progress",
    "generating": "Generation in progress",
    "ready": "Available",
    "delivered": "Available",
    "failed": "Generation failed - contact support",
}


def _value(status: Any) -> str:
    return status.value if isinstance(status, CertificateStatus) else str(status)


def assert_transition_allowed(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is an edge."""
    current, target = _value(current), _value(target)
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)


def student_status_label(status: str) -> str:
    return STUDENT_LABELS[_value(status)]


def transition(
    db: Session,
    certificate_id: int,
    expected: Iterable[str],
    target: str,
    values: Optional[Dict[str, Any]] = None,
    conditions: Sequence[Any] = (),
    actor_id: str = "system",
    actor_kind: str = "system",
    note: Optional[str] = None,
) -> bool:
    """Move a row from one of ``expected`` to ``target`` atomically.

    ``values`` are written in the same UPDATE and ``conditions`` are extra
    WHERE clauses. The change and its audit entry are committed together.

    Returns:
        True if this caller performed the transition, False if the row did
        not match (another actor got there first).
    """
    expected = [_value(s) for s in expected]
    target = _value(target)
    for current in expected:
        assert_transition_allowed(current, target)

    now = datetime.now(timezone.utc)
    result = db.execute(
        update(GeneratedCertificateModel)
        .where(
            GeneratedCertificateModel.id == certificate_id,
            GeneratedCertificateModel.status.in_(expected),
            *conditions,
        )
        .values(status=target, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.debug(f"Certificate {certificate_id} not in {expected}; {target} skipped")
        return False

    AuditService(db).log_status_change(
        "GeneratedCertificate",
        certificate_id,
        "|".join(expected),
        target,
        actor_kind=actor_kind,
        actor_id=actor_id,
        note=note,
    )
    db.commit()
    logger.info(f"Certificate {certificate_id} -> {target}")
    return True


def claim_for_generation(
    db: Session,
    certificate_id: int,
    worker_id: str,
    expected: Iterable[str] = CLAIMABLE_STATUSES,
    conditions: Sequence[Any] = (),
    actor_kind: str = "system",
) -> bool:
    """Start an attempt: ``pending|failed -> generating`` with a fresh lease."""
    now = datetime.now(timezone.utc)
    return transition(
        db,
        certificate_id,
        expected,
        CertificateStatus.GENERATING,
        values={
            "claimed_by": worker_id,
            "claimed_at": now,
            "attempt_count": GeneratedCertificateModel.attempt_count + 1,
        },
        conditions=conditions,
        actor_id=worker_id,
        actor_kind=actor_kind,
        note=f"Claimed by {worker_id}",
    )


def acquire_lease(
    db: Session,
    certificate_id: int,
    worker_id: str,
    conditions: Sequence[Any] = (),
) -> bool:
    """Take over a partially generated row nobody holds.

    Partial rows stay in ``generating`` with no lease; re-attempting their
    failed document is not a status change, only a lease change. Extra
    ``conditions`` are ANDed into the UPDATE.
    """
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(GeneratedCertificateModel)
        .where(
            GeneratedCertificateModel.id == certificate_id,
            GeneratedCertificateModel.status == CertificateStatus.GENERATING.value,
            GeneratedCertificateModel.claimed_by.is_(None),
            *conditions,
        )
        .values(
            claimed_by=worker_id,
            claimed_at=now,
            updated_at=now,
            attempt_count=GeneratedCertificateModel.attempt_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def update_held(
    db: Session,
    certificate_id: int,
    worker_id: str,
    values: Dict[str, Any],
) -> bool:
    """Write ``values`` only while ``worker_id`` still holds the row in ``generating``."""
    result = db.execute(
        update(GeneratedCertificateModel)
        .where(
            GeneratedCertificateModel.id == certificate_id,
            GeneratedCertificateModel.status == CertificateStatus.GENERATING.value,
            GeneratedCertificateModel.claimed_by == worker_id,
        )
        .values(updated_at=datetime.now(timezone.utc), **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def held_by(worker_id: str) -> list:
    """WHERE clause restricting a transition to rows this worker holds."""
    return [GeneratedCertificateModel.claimed_by == worker_id]
