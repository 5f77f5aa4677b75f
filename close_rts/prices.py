"""
Session price snapshots.

Two sessions are tracked per instrument:

- closing: the last price of the full trading day,
- evening: the close of the day session, taken before the evening session.

`PriceRecorder` captures both from the time-frame stream and writes them to the
store; `StoredPriceSource` reads them back by "sessions ago".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Protocol

from close_rts.timeframe import DailyGuard, TimeFrameEvent, is_at, nudged

if TYPE_CHECKING:
    from close_rts.persistence import SqliteStore

log = logging.getLogger(__name__)

EVENING_RECORD_AT = time(18, 45)
CLOSING_RECORD_AT = time(23, 49)


class PriceSession(str, Enum):
    CLOSING = "closing"
    EVENING = "evening"


@dataclass(frozen=True)
class PriceSnapshot:
    code: str
    price: Decimal
    time: datetime


class PriceSnapshotSource(Protocol):
    def closing_prices(self, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        ...

    def evening_prices(self, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        ...


class StoredPriceSource:
    """
    `sessions_ago=0` reads snapshots recorded on today's date; `n > 0` reads the
    n-th distinct recorded date before today, so weekends and holidays are
    skipped. Missing data yields an empty mapping.
    """

    def __init__(self, store: "SqliteStore", *, today: Callable[[], date] | None = None) -> None:
        self._store = store
        self._today = today or date.today

    def closing_prices(self, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        return self._read(PriceSession.CLOSING, sessions_ago)

    def evening_prices(self, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        return self._read(PriceSession.EVENING, sessions_ago)

    def _read(self, session: PriceSession, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        if sessions_ago < 0:
            raise ValueError("sessions_ago must not be negative")
        today = self._today()
        if sessions_ago == 0:
            return self._store.load_price_snapshots(session, today)
        earlier = [d for d in self._store.list_price_dates(session, on_or_before=today) if d < today]
        if len(earlier) < sessions_ago:
            return {}
        return self._store.load_price_snapshots(session, earlier[sessions_ago - 1])


class InMemoryPriceSource:
    """Fixed snapshots keyed by (session, sessions_ago); used by dry runs and tests."""

    def __init__(self) -> None:
        self._data: dict[tuple[PriceSession, int], dict[str, PriceSnapshot]] = {}

    def set(self, session: PriceSession, sessions_ago: int, snapshots: Iterable[PriceSnapshot]) -> None:
        self._data[(session, int(sessions_ago))] = {s.code: s for s in snapshots}

    def closing_prices(self, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        return dict(self._data.get((PriceSession.CLOSING, sessions_ago), {}))

    def evening_prices(self, sessions_ago: int) -> Mapping[str, PriceSnapshot]:
        return dict(self._data.get((PriceSession.EVENING, sessions_ago), {}))


class PriceRecorder:
    """Records last-bar closes at the evening and closing minutes, once per date."""

    def __init__(
        self,
        store: "SqliteStore",
        codes: Iterable[str],
        *,
        evening_at: time = EVENING_RECORD_AT,
        closing_at: time = CLOSING_RECORD_AT,
    ) -> None:
        self._store = store
        self._codes = list(codes)
        self._times = {PriceSession.EVENING: evening_at, PriceSession.CLOSING: closing_at}
        self._guard = DailyGuard()

    def on_time_frame(self, event: TimeFrameEvent) -> PriceSession | None:
        for session, at in self._times.items():
            if not is_at(event.market_time, at):
                continue
            if not self._guard.claim(session.value, event.market_time):
                return None
            self._record(session, event)
            return session
        return None

    def _record(self, session: PriceSession, event: TimeFrameEvent) -> None:
        trade_date = nudged(event.market_time).date()
        for code in self._codes:
            bar = event.last_bars.get(code)
            if bar is None:
                log.error("No bar for %s at %s; %s price not recorded", code, event.market_time, session.value)
                continue
            snap = PriceSnapshot(code=code, price=bar.close, time=event.market_time)
            self._store.save_price_snapshot(session, trade_date, snap)
            log.info("Recorded %s price %s=%s for %s", session.value, code, bar.close, trade_date)
