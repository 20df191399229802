"""
Tests for the generation state machine.

Verifies:
- Only the allowed edges can be taken
- Transitions are conditional: a stale expected status changes nothing
- Claims take a lease and count the attempt
- Lease-guarded writes and lease takeover of partial rows
"""

import pytest

from certificate_pipeline.db.audit_service import AuditService
from certificate_pipeline.db.models import GeneratedCertificateModel
from certificate_pipeline.db.services import GeneratedCertificateService
from certificate_pipeline.errors import InvalidTransitionError
from certificate_pipeline.worker.state import (
    CertificateStatus,
    acquire_lease,
    assert_transition_allowed,
    claim_for_generation,
    held_by,
    student_status_label,
    transition,
    update_held,
)


@pytest.fixture
def certificate(db_session, make_claim) -> GeneratedCertificateModel:
    claim = make_claim()
    return GeneratedCertificateService(db_session).create_pending(claim)


def reload(db_session, certificate_id) -> GeneratedCertificateModel:
    db_session.expire_all()
    return db_session.get(GeneratedCertificateModel, certificate_id)


class TestAllowedTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "generating"),
            ("generating", "ready"),
            ("generating", "failed"),
            ("failed", "generating"),
            ("ready", "delivered"),
        ],
    )
    def test_allowed(self, current, target):
        assert_transition_allowed(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "ready"),
            ("pending", "delivered"),
            ("failed", "ready"),
            ("ready", "generating"),
            ("ready", "failed"),
            ("delivered", "ready"),
            ("delivered", "generating"),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc:
            assert_transition_allowed(current, target)
        assert exc.value.details == {"current": current, "target": target}

    def test_accepts_enum_members(self):
        assert_transition_allowed(CertificateStatus.READY, CertificateStatus.DELIVERED)


class TestTransition:
    """Tests for transition()."""

    def test_performs_transition(self, db_session, certificate):
        assert transition(db_session, certificate.id, ["pending"], "generating", actor_id="worker-1")

        assert reload(db_session, certificate.id).status == "generating"

    def test_writes_values_in_same_update(self, db_session, certificate):
        transition(
            db_session,
            certificate.id,
            ["pending"],
            "generating",
            values={"last_error": "previous attempt"},
        )
        assert reload(db_session, certificate.id).last_error == "previous attempt"

    def test_stale_expectation_changes_nothing(self, db_session, certificate):
        assert transition(db_session, certificate.id, ["pending"], "generating")
        assert not transition(db_session, certificate.id, ["pending"], "generating")

        entries = AuditService(db_session).query_by_action("status_changed")
        assert len(entries) == 1

    def test_extra_conditions(self, db_session, certificate):
        claim_for_generation(db_session, certificate.id, "worker-1")

        assert not transition(
            db_session, certificate.id, ["generating"], "failed", conditions=held_by("worker-2")
        )
        assert reload(db_session, certificate.id).status == "generating"
        assert transition(
            db_session, certificate.id, ["generating"], "failed", conditions=held_by("worker-1")
        )

    def test_invalid_edge_raises_before_touching_row(self, db_session, certificate):
        with pytest.raises(InvalidTransitionError):
            transition(db_session, certificate.id, ["pending"], "ready")
        assert reload(db_session, certificate.id).status == "pending"

    def test_audit_entry(self, db_session, certificate):
        transition(
            db_session,
            certificate.id,
            ["pending"],
            "generating",
            actor_id="worker-1",
            note="Claimed by worker-1",
        )
        entries = AuditService(db_session).query_by_entity("GeneratedCertificate", certificate.id)
        status_changes = [e for e in entries if e.action == "status_changed"]

        assert len(status_changes) == 1
        assert status_changes[0].before == {"status": "pending"}
        assert status_changes[0].after == {"status": "generating"}
        assert status_changes[0].actor_id == "worker-1"
        assert status_changes[0].note == "Claimed by worker-1"


class TestClaim:
    def test_claim_takes_lease_and_counts_attempt(self, db_session, certificate):
        assert claim_for_generation(db_session, certificate.id, "worker-1")

        row = reload(db_session, certificate.id)
        assert row.status == "generating"
        assert row.claimed_by == "worker-1"
        assert row.claimed_at is not None
        assert row.attempt_count == 1

    def test_second_claim_loses(self, db_session, certificate):
        assert claim_for_generation(db_session, certificate.id, "worker-1")
        assert not claim_for_generation(db_session, certificate.id, "worker-2")
        assert reload(db_session, certificate.id).claimed_by == "worker-1"

    def test_failed_row_can_be_claimed_again(self, db_session, certificate):
        claim_for_generation(db_session, certificate.id, "worker-1")
        transition(db_session, certificate.id, ["generating"], "failed", values={"claimed_by": None})

        assert claim_for_generation(db_session, certificate.id, "worker-2")
        assert reload(db_session, certificate.id).attempt_count == 2


class TestLease:
    def test_update_held_requires_lease(self, db_session, certificate):
        claim_for_generation(db_session, certificate.id, "worker-1")

        assert not update_held(db_session, certificate.id, "worker-2", {"last_error": "x"})
        assert update_held(db_session, certificate.id, "worker-1", {"last_error": "y"})
        assert reload(db_session, certificate.id).last_error == "y"

    def test_update_held_requires_generating(self, db_session, certificate):
        assert not update_held(db_session, certificate.id, "worker-1", {"last_error": "x"})

    def test_acquire_lease_of_released_row(self, db_session, certificate):
        claim_for_generation(db_session, certificate.id, "worker-1")
        update_held(db_session, certificate.id, "worker-1", {"claimed_by": None, "claimed_at": None})

        assert acquire_lease(db_session, certificate.id, "retry-1")
        row = reload(db_session, certificate.id)
        assert row.claimed_by == "retry-1"
        assert row.status == "generating"
        assert row.attempt_count == 2

    def test_acquire_lease_of_held_row_fails(self, db_session, certificate):
        claim_for_generation(db_session, certificate.id, "worker-1")
        assert not acquire_lease(db_session, certificate.id, "retry-1")

    def test_acquire_lease_of_pending_row_fails(self, db_session, certificate):
        assert not acquire_lease(db_session, certificate.id, "retry-1")


class TestStudentLabels:
    @pytest.mark.parametrize(
        "status,label",
        [
            ("pending", "Generation in progress"),
            ("generating", "Generation in progress"),
            ("ready", "Available"),
            ("delivered", "Available"),
            ("failed", "Generation failed - contact support"),
        ],
    )
    def test_label(self, status, label):
        assert student_status_label(status) == label
