from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Mapping

# Events can land a few seconds before the boundary minute.
GATE_NUDGE = timedelta(seconds=5)

TIME_EXIT_AT = time(10, 5)
ENTRY_AT = time(23, 45)


@dataclass(frozen=True)
class Bar:
    timestamp_epoch_s: float
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal | None = None


@dataclass(frozen=True)
class TimeFrameEvent:
    """Current market time plus the latest bar per instrument code."""

    market_time: datetime
    last_bars: Mapping[str, Bar] = field(default_factory=dict)


class Gate(str, Enum):
    TIME_EXIT = "time_exit"
    ENTRY = "entry"


def nudged(market_time: datetime) -> datetime:
    return market_time + GATE_NUDGE


def is_at(market_time: datetime, at: time) -> bool:
    """True when the nudged time falls inside the `at` hour:minute."""
    t = nudged(market_time)
    return t.hour == at.hour and t.minute == at.minute


def resolve_gate(market_time: datetime) -> Gate | None:
    if is_at(market_time, TIME_EXIT_AT):
        return Gate.TIME_EXIT
    if not is_at(market_time, ENTRY_AT):
        return None
    return Gate.ENTRY


class DailyGuard:
    """Remembers which keys already fired on which trading date."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fired: set[tuple[str, date]] = set()

    def claim(self, key: str, market_time: datetime) -> bool:
        """Return True the first time `key` is claimed for the nudged date."""
        day = nudged(market_time).date()
        with self._lock:
            if (key, day) in self._fired:
                return False
            # Only today's entries matter; keep the set small.
            self._fired = {k for k in self._fired if k[1] >= day}
            self._fired.add((key, day))
            return True


def seconds_until_next_frame(now: datetime, timeframe_seconds: int) -> float:
    """Seconds until the next multiple of `timeframe_seconds` since midnight."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (now - midnight).total_seconds()
    remaining = timeframe_seconds - (elapsed % timeframe_seconds)
    return float(remaining)
