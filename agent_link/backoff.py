from __future__ import annotations

import logging
import random

from agent_link.common import now as _now
from agent_link.models import BackoffState

logger = logging.getLogger(__name__)

DEFAULT_BASE_BACKOFF_SECONDS = 60.0
DEFAULT_MAX_BACKOFF_SECONDS = 300.0
DEFAULT_JITTER = 0.3


class BackoffScheduler:
    """Per-topic rate-limit state.

    After ``k`` consecutive rate-limit failures a topic waits
    ``min(max_backoff, base_backoff * 2**k)`` seconds, scaled by a uniform
    factor in ``[1 - jitter, 1 + jitter]``. A success clears the state.
    """

    def __init__(
        self,
        *,
        base_backoff: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff: float = DEFAULT_MAX_BACKOFF_SECONDS,
        jitter: float = DEFAULT_JITTER,
        rng: random.Random | None = None,
    ) -> None:
        if base_backoff <= 0:
            raise ValueError("base_backoff must be > 0")
        if max_backoff < base_backoff:
            raise ValueError("max_backoff must be >= base_backoff")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._states: dict[str, BackoffState] = {}

    def state(self, topic_id: str) -> BackoffState:
        st = self._states.get(topic_id)
        if st is None:
            st = BackoffState()
            self._states[topic_id] = st
        return st

    def forget(self, topic_id: str) -> None:
        self._states.pop(topic_id, None)

    def delay_for(self, failures: int) -> float:
        # Exponent is capped so huge failure counts don't overflow before min() applies.
        raw = min(self.max_backoff, self.base_backoff * 2 ** min(failures, 32))
        factor = self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        return raw * factor

    def record_outcome(
        self, topic_id: str, *, success: bool, now: float | None = None
    ) -> float | None:
        """Update the topic after a read; returns the imposed delay on failure."""
        st = self.state(topic_id)
        if success:
            if st.consecutive_failures:
                logger.debug("Backoff cleared for topic %s", topic_id)
            st.consecutive_failures = 0
            st.next_eligible_at = 0.0
            return None

        ts = _now() if now is None else now
        st.consecutive_failures += 1
        delay = self.delay_for(st.consecutive_failures)
        st.next_eligible_at = ts + delay
        logger.warning(
            "Rate limited on topic %s: backing off %.0fs (failure #%d)",
            topic_id,
            delay,
            st.consecutive_failures,
        )
        return delay

    def next_poll_time(self, topic_id: str) -> float:
        return self.state(topic_id).next_eligible_at

    def is_eligible(self, topic_id: str, now: float | None = None) -> bool:
        ts = _now() if now is None else now
        return ts >= self.state(topic_id).next_eligible_at
