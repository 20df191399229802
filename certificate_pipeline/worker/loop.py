"""
Certificate Worker Loop - generates documents for paid claims.

The database is the queue. Several worker processes can run side by side;
the only thing that decides who works on a row is a conditional UPDATE
that hands it a lease.

Flow (each poll):
1. Enqueue: paid claims without a generated row get a ``pending`` row
2. Reclaim: ``generating`` rows whose lease expired are moved to ``failed``
3. Claim: ``pending`` rows, plus ``failed`` and partial rows with attempts left
4. Generate: claimed rows run through the pipeline in a thread pool
"""
from __future__ import annotations

import logging
import signal
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.base import get_session_local
from ..db.models import GeneratedCertificateModel
from ..db.services import ClaimService, GeneratedCertificateService
from ..logging_config import configure_logging
from .pipeline import GenerationPipeline, build_pipeline
from .state import CertificateStatus, acquire_lease, claim_for_generation, transition

logger = logging.getLogger(__name__)

LEASE_EXPIRED = "worker lease expired"


class WorkerLoop:
    """Main worker loop for generating certificates."""

    def __init__(
        self,
        pipeline: Optional[GenerationPipeline] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        poll_interval: Optional[int] = None,
        claim_limit: Optional[int] = None,
        concurrency: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize worker loop.

        Args:
            pipeline: Generation pipeline (default built from config)
            session_factory: Creates database sessions (default sessionmaker)
            poll_interval: Seconds between poll cycles (default from config)
            claim_limit: Max rows to claim per cycle (default from config)
            concurrency: Rows generated in parallel (default from config)
        """
        self.settings = settings or get_settings()
        self.pipeline = pipeline or build_pipeline(self.settings)
        self.session_factory = session_factory or get_session_local()
        self.poll_interval = poll_interval or self.settings.worker_poll_interval
        self.claim_limit = claim_limit or self.settings.worker_claim_limit
        self.concurrency = concurrency or self.settings.worker_concurrency
        self.running = False
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"

        logger.info(
            f"Worker initialized: id={self.worker_id}, "
            f"poll_interval={self.poll_interval}s, "
            f"claim_limit={self.claim_limit}, "
            f"concurrency={self.concurrency}"
        )

    def start(self) -> None:
        """Start the worker loop. Runs until stopped."""
        self.running = True
        logger.info(f"Worker {self.worker_id} starting...")

        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            while self.running:
                try:
                    processed = self.poll_once()
                    if processed == 0:
                        time.sleep(self.poll_interval)
                except Exception as e:
                    logger.exception(f"Error in worker loop: {e}")
                    # Sleep on error to avoid tight loop
                    time.sleep(self.poll_interval)
        finally:
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        """Signal the worker to stop after the current batch."""
        logger.info(f"Worker {self.worker_id} stopping...")
        self.running = False

    def _signal_handler(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def poll_once(self) -> int:
        """Run one enqueue/reclaim/claim/generate cycle.

        Returns:
            Number of rows generated this cycle
        """
        db = self.session_factory()
        try:
            self._enqueue_payable(db)
            self._reclaim_expired(db)
            claimed = self._claim_rows(db)
        finally:
            db.close()

        if not claimed:
            return 0

        logger.info(f"Worker {self.worker_id} claimed {len(claimed)} certificate(s)")
        with ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(claimed)),
            thread_name_prefix=self.worker_id,
        ) as pool:
            list(pool.map(self._process, claimed))
        return len(claimed)

    def _enqueue_payable(self, db: Session) -> int:
        """Create pending rows for paid claims that have none."""
        claims = ClaimService(db).get_paid_claims_without_certificate(limit=self.claim_limit * 4)
        service = GeneratedCertificateService(db)
        for claim in claims:
            service.create_pending(claim, actor_id=self.worker_id)
        if claims:
            logger.info(f"Enqueued {len(claims)} paid claim(s)")
        return len(claims)

    def _reclaim_expired(self, db: Session) -> int:
        """Fail rows whose worker stopped renewing its lease (crashed or killed)."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.settings.worker_lease_seconds)
        expired = (
            db.query(GeneratedCertificateModel.id, GeneratedCertificateModel.claimed_by)
            .filter(
                GeneratedCertificateModel.status == CertificateStatus.GENERATING.value,
                GeneratedCertificateModel.claimed_by.isnot(None),
                GeneratedCertificateModel.claimed_at < cutoff,
            )
            .all()
        )
        reclaimed = 0
        for certificate_id, holder in expired:
            if transition(
                db,
                certificate_id,
                [CertificateStatus.GENERATING],
                CertificateStatus.FAILED,
                values={"last_error": LEASE_EXPIRED, "claimed_by": None, "claimed_at": None},
                conditions=[
                    GeneratedCertificateModel.claimed_by == holder,
                    GeneratedCertificateModel.claimed_at < cutoff,
                ],
                actor_id=self.worker_id,
                note=f"Lease held by {holder} expired",
            ):
                logger.warning(f"Certificate {certificate_id}: lease of {holder} expired")
                reclaimed += 1
        return reclaimed

    def _claim_rows(self, db: Session) -> List[int]:
        """Atomically claim up to ``claim_limit`` rows.

        Candidates are read first, then each is claimed with a conditional
        UPDATE; a candidate another worker took in between is skipped.
        Partial rows (``generating`` with no lease) are taken over with a
        lease change only, under the same attempt ceiling and backoff as
        ``failed`` rows.
        """
        retry_cutoff = datetime.now(timezone.utc) - timedelta(
            seconds=self.settings.retry_backoff_seconds
        )
        attempts_left = GeneratedCertificateModel.attempt_count < self.settings.max_generation_attempts
        retryable = and_(
            GeneratedCertificateModel.status == CertificateStatus.FAILED.value,
            attempts_left,
            GeneratedCertificateModel.updated_at <= retry_cutoff,
        )
        partial = and_(
            GeneratedCertificateModel.status == CertificateStatus.GENERATING.value,
            GeneratedCertificateModel.claimed_by.is_(None),
            attempts_left,
            GeneratedCertificateModel.updated_at <= retry_cutoff,
        )
        candidates = (
            db.query(GeneratedCertificateModel.id, GeneratedCertificateModel.status)
            .filter(
                or_(
                    GeneratedCertificateModel.status == CertificateStatus.PENDING.value,
                    retryable,
                    partial,
                )
            )
            .order_by(GeneratedCertificateModel.created_at.asc(), GeneratedCertificateModel.id.asc())
            .limit(self.claim_limit)
            .all()
        )

        claimed: List[int] = []
        for certificate_id, status in candidates:
            if status == CertificateStatus.GENERATING.value:
                won = acquire_lease(db, certificate_id, self.worker_id, conditions=[attempts_left])
            else:
                conditions = [attempts_left] if status == CertificateStatus.FAILED.value else []
                won = claim_for_generation(
                    db, certificate_id, self.worker_id, expected=[status], conditions=conditions
                )
            if won:
                claimed.append(certificate_id)
            else:
                logger.debug(f"Certificate {certificate_id} claimed by another worker")
        return claimed

    def _process(self, certificate_id: int) -> None:
        """Generate one claimed row in its own session."""
        db = self.session_factory()
        try:
            certificate = self.pipeline.run(db, certificate_id, self.worker_id)
            logger.info(
                f"Certificate {certificate_id} finished as {certificate.status} "
                f"({certificate.registration_number})"
            )
        except Exception as e:
            # The pipeline has already recorded the failure on the row
            logger.error(f"Certificate {certificate_id} failed: {e}")
        finally:
            db.close()


def run_worker(
    poll_interval: Optional[int] = None,
    claim_limit: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> None:
    """Run the worker loop.

    Args:
        poll_interval: Seconds between poll cycles
        claim_limit: Max rows to claim per poll cycle
        concurrency: Rows generated in parallel
    """
    configure_logging()

    worker = WorkerLoop(
        poll_interval=poll_interval,
        claim_limit=claim_limit,
        concurrency=concurrency,
    )
    worker.start()
