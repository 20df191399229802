"""
Registration number allocator.

Numbers come from one counter row per issuing authority. Each allocation is
a compare-and-swap: read the current value, then update the row only if it
still holds that value. A zero rowcount means another allocator (thread or
process) got there first, so the loop re-reads and tries again. No
in-process state is involved, which keeps independent worker processes safe.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..config import Settings, get_settings
from ..db.models import RegistrationSequenceModel
from ..errors import RegistrationAllocationError

logger = logging.getLogger(__name__)


def format_registration_number(prefix: str, value: int, width: int) -> str:
    """Format ``value`` as e.g. ILC000042."""
    return f"{prefix}{value:0{width}d}"


class RegistrationAllocator:
    """Hands out strictly increasing, never reused registration numbers."""

    def __init__(
        self,
        engine_factory: Callable[[], Engine],
        settings: Optional[Settings] = None,
    ):
        """Initialize the allocator.

        Args:
            engine_factory: Returns the engine to allocate against. Each
                allocation runs in its own short transaction on its own
                connection, independent of any caller session.
            settings: Prefix, width and retry budget (default from config)
        """
        self.settings = settings or get_settings()
        self._engine_factory = engine_factory
        self.authority = self.settings.registration_prefix

    def _ensure_sequence(self, engine: Engine) -> None:
        with engine.connect() as conn:
            exists = conn.execute(
                select(RegistrationSequenceModel.value).where(
                    RegistrationSequenceModel.authority == self.authority
                )
            ).first()
        if exists is not None:
            return
        try:
            with engine.begin() as conn:
                conn.execute(
                    insert(RegistrationSequenceModel).values(authority=self.authority, value=0)
                )
        except IntegrityError:
            # Another allocator created it first
            pass

    def allocate(self) -> str:
        """Atomically increment the sequence and return the formatted number.

        Raises:
            RegistrationAllocationError: On database errors, or when the
                compare-and-swap keeps losing past the configured budget.
        """
        engine = self._engine_factory()
        attempts = self.settings.registration_max_cas_attempts
        try:
            self._ensure_sequence(engine)
            for _ in range(attempts):
                with engine.begin() as conn:
                    # FOR UPDATE serializes allocators on backends with row
                    # locks; elsewhere the guarded UPDATE below decides.
                    current = conn.execute(
                        select(RegistrationSequenceModel.value)
                        .where(RegistrationSequenceModel.authority == self.authority)
                        .with_for_update()
                    ).scalar_one()
                    result = conn.execute(
                        update(RegistrationSequenceModel)
                        .where(
                            RegistrationSequenceModel.authority == self.authority,
                            RegistrationSequenceModel.value == current,
                        )
                        .values(value=current + 1)
                    )
                    if result.rowcount == 1:
                        number = format_registration_number(
                            self.authority, current + 1, self.settings.registration_width
                        )
                        logger.debug(f"Allocated registration number {number}")
                        return number
                logger.debug(f"Sequence {self.authority} moved past {current}, retrying")
        except SQLAlchemyError as e:
            raise RegistrationAllocationError(f"Registration allocation failed: {e}") from e

        raise RegistrationAllocationError(
            f"Registration allocation for {self.authority} lost {attempts} consecutive races"
        )

    def peek(self) -> str:
        """Return the number the next allocation would produce, without taking it."""
        engine = self._engine_factory()
        with engine.connect() as conn:
            current = conn.execute(
                select(RegistrationSequenceModel.value).where(
                    RegistrationSequenceModel.authority == self.authority
                )
            ).scalar()
        return format_registration_number(
            self.authority, (current or 0) + 1, self.settings.registration_width
        )
