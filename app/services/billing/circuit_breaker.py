"""Failure-count circuit breaker guarding outbound processor calls.

State lives in the ``circuit_breakers`` table, keyed by breaker name, so
every worker process sees the same open/closed decision.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import CIRCUIT_BREAKER_OPEN
from app.models.billing import CircuitBreakerState
from app.services.common import as_utc

logger = logging.getLogger(__name__)

PROCESSOR_BREAKER = "polar_api"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class BreakerSnapshot:
    name: str
    is_open: bool
    consecutive_failures: int
    next_retry_at: datetime | None


class CircuitBreaker:
    def __init__(
        self,
        db: Session,
        name: str = PROCESSOR_BREAKER,
        threshold: int | None = None,
        cooldown: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.name = name
        self.threshold = threshold or settings.circuit_breaker_threshold
        self.cooldown = cooldown or timedelta(
            seconds=settings.circuit_breaker_cooldown_seconds
        )
        self._clock = clock

    def _state(self) -> CircuitBreakerState:
        state = self.db.scalars(
            select(CircuitBreakerState)
            .where(CircuitBreakerState.name == self.name)
            .with_for_update()
        ).first()
        if state is not None:
            return state
        state = CircuitBreakerState(
            name=self.name, is_open=False, consecutive_failures=0
        )
        self.db.add(state)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            state = self.db.scalars(
                select(CircuitBreakerState).where(CircuitBreakerState.name == self.name)
            ).one()
        return state

    def check_allowed(self) -> bool:
        state = self._state()
        if not state.is_open:
            return True
        now = self._clock()
        retry_at = as_utc(state.next_retry_at)
        if retry_at is not None and now < retry_at:
            return False
        # Cooldown elapsed: half-open and let the next call through.
        state.is_open = False
        state.consecutive_failures = 0
        self.db.commit()
        CIRCUIT_BREAKER_OPEN.labels(self.name).set(0)
        logger.info("Circuit breaker %s half-open", self.name, extra={"breaker": self.name})
        return True

    def record_success(self) -> None:
        state = self._state()
        if state.consecutive_failures or state.is_open:
            logger.info("Circuit breaker %s reset", self.name, extra={"breaker": self.name})
        state.consecutive_failures = 0
        state.is_open = False
        state.next_retry_at = None
        self.db.commit()
        CIRCUIT_BREAKER_OPEN.labels(self.name).set(0)

    def record_failure(self) -> bool:
        """Count a failure. Returns True when this call tripped the breaker."""
        state = self._state()
        now = self._clock()
        was_open = state.is_open
        state.consecutive_failures = (state.consecutive_failures or 0) + 1
        state.last_failure_at = now
        if state.consecutive_failures >= self.threshold:
            state.is_open = True
            state.next_retry_at = now + self.cooldown
        self.db.commit()
        tripped = state.is_open and not was_open
        if tripped:
            CIRCUIT_BREAKER_OPEN.labels(self.name).set(1)
            logger.error(
                "Circuit breaker %s opened after %d failures, retry at %s",
                self.name,
                state.consecutive_failures,
                state.next_retry_at.isoformat(),
                extra={"breaker": self.name},
            )
        return tripped

    def snapshot(self) -> BreakerSnapshot:
        state = self._state()
        return BreakerSnapshot(
            name=self.name,
            is_open=state.is_open,
            consecutive_failures=state.consecutive_failures,
            next_retry_at=as_utc(state.next_retry_at),
        )
