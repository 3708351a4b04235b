"""Temporally-aware scheduler for unprompted replies."""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from typing import Callable, Literal

from loguru import logger

from emulbot.utils.helpers import irc_lower


@dataclass
class InterjectionState:
    """Per-channel scheduler state. Only the scheduler touches it."""

    pressure: float = 0.0
    messages_since_fire: int = 0
    last_fire: float | None = None
    force_next: bool = False


class InterjectionScheduler:
    """
    Decide whether a non-addressed message gets a spontaneous reply.

    Each eligible message adds a fixed increment to the channel's pressure,
    and the fire probability rises with pressure. Firing resets pressure to
    a small residual. Compared with flat per-message sampling this gives
    "blue noise" spacing: fewer long silences and fewer bursts.

    Guards, in order:
    - a one-shot force flag (per channel or global) always fires;
    - fewer than ``min_gap_messages`` since the last firing never fires;
    - ``max_gap_messages`` or more since the last firing always fires;
    - less than ``min_gap_seconds`` since the last firing suppresses any
      firing from the two rules above and from the random draw.

    ``evaluate`` must be called at most once per inbound message. Messages
    it is not called for (direct mentions) leave the state untouched.
    """

    def __init__(
        self,
        chance_per_message: float,
        *,
        curve: Literal["linear", "exponential"] = "linear",
        steepness: float = 1.0,
        residual_messages: float = 1.0,
        min_gap_seconds: float = 0.0,
        min_gap_messages: int | None = None,
        max_gap_messages: int | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0.0 < chance_per_message <= 1.0:
            raise ValueError("chance_per_message must be in (0, 1]")
        avg_gap = max(1, int(round(1.0 / chance_per_message)))
        self.chance_per_message = chance_per_message
        self.min_gap_messages = max(1, min_gap_messages if min_gap_messages is not None else avg_gap // 2)
        self.max_gap_messages = max(
            self.min_gap_messages,
            max_gap_messages if max_gap_messages is not None else avg_gap * 2,
        )
        # Probability reaches chance_per_message at min_gap and keeps climbing.
        self.increment = chance_per_message / self.min_gap_messages
        self.residual = max(0.0, residual_messages) * self.increment
        self.curve = curve
        self.steepness = steepness
        self.min_gap_seconds = max(0.0, min_gap_seconds)
        self._rng = rng or random.Random()
        self._clock = clock
        self._states: dict[str, InterjectionState] = {}
        self._force_any = False

    @classmethod
    def from_config(cls, config, *, chance: float | None = None, **kwargs) -> "InterjectionScheduler":
        """Build from an InterjectionConfig; ``chance`` overrides chance_per_message."""
        return cls(
            chance if chance is not None else config.chance_per_message,
            curve=config.curve,
            steepness=config.steepness,
            residual_messages=config.residual_messages,
            min_gap_seconds=config.min_gap_seconds,
            min_gap_messages=config.min_gap_messages,
            max_gap_messages=config.max_gap_messages,
            **kwargs,
        )

    def state(self, channel: str) -> InterjectionState:
        key = irc_lower(channel)
        st = self._states.get(key)
        if st is None:
            st = InterjectionState()
            self._states[key] = st
        return st

    def probability(self, pressure: float) -> float:
        """Map pressure to a fire probability in [0, 1]."""
        if pressure <= 0:
            return 0.0
        if self.curve == "exponential":
            return 1.0 - math.exp(-self.steepness * pressure)
        return min(1.0, pressure)

    def force_next(self, channel: str | None = None) -> None:
        """Make the next evaluation fire (for ``channel``, or for any channel)."""
        if channel:
            self.state(channel).force_next = True
        else:
            self._force_any = True

    def evaluate(self, channel: str, is_private_message: bool = False) -> bool:
        if is_private_message:
            return False

        st = self.state(channel)
        st.messages_since_fire += 1
        st.pressure += self.increment
        now = self._clock()

        if st.force_next or self._force_any:
            if st.force_next:
                st.force_next = False
            else:
                self._force_any = False
            logger.debug(f"Forced interjection in {channel}")
            self._record_fire(st, now)
            return True

        if st.messages_since_fire < self.min_gap_messages:
            return False

        if st.messages_since_fire >= self.max_gap_messages:
            fires = True
        else:
            fires = self._rng.random() < self.probability(st.pressure)

        if fires and st.last_fire is not None and now - st.last_fire < self.min_gap_seconds:
            logger.debug(f"Interjection in {channel} suppressed by time floor")
            return False

        if fires:
            self._record_fire(st, now)
        return fires

    def _record_fire(self, st: InterjectionState, now: float) -> None:
        st.pressure = self.residual
        st.messages_since_fire = 0
        st.last_fire = now
