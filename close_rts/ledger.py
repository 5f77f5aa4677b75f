from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable

from close_rts.orders import Side

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveTrade:
    """An open position owned by the strategy."""

    code: str
    side: Side
    volume: Decimal
    entry_price: Decimal
    opened_at: datetime
    stop_loss_price: Decimal | None = None
    take_profit_price: Decimal | None = None


class ActiveTradeLedger:
    """
    Thread-safe set of active trades, at most one per instrument code.

    Listeners are called without arguments after every mutation that changed
    the ledger, outside the lock.
    """

    def __init__(self, trades: Iterable[ActiveTrade] = ()) -> None:
        self._lock = threading.RLock()
        self._trades: dict[str, ActiveTrade] = {}
        self._listeners: list[Callable[[], None]] = []
        for trade in trades:
            if trade.code in self._trades:
                raise ValueError(f"Duplicate active trade for {trade.code}")
            self._trades[trade.code] = trade

    def count(self, code: str) -> int:
        with self._lock:
            return 1 if code in self._trades else 0

    def get(self, code: str) -> ActiveTrade | None:
        with self._lock:
            return self._trades.get(code)

    def snapshot(self) -> list[ActiveTrade]:
        with self._lock:
            return list(self._trades.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._trades)

    def add(self, trade: ActiveTrade) -> bool:
        with self._lock:
            if trade.code in self._trades:
                log.warning("Active trade for %s already recorded; ignoring duplicate", trade.code)
                return False
            self._trades[trade.code] = trade
        self._notify()
        return True

    def remove(self, code: str) -> bool:
        with self._lock:
            if self._trades.pop(code, None) is None:
                return False
        self._notify()
        return True

    def replace_all(self, trades: Iterable[ActiveTrade]) -> None:
        fresh: dict[str, ActiveTrade] = {}
        for trade in trades:
            if trade.code in fresh:
                raise ValueError(f"Duplicate active trade for {trade.code}")
            fresh[trade.code] = trade
        with self._lock:
            self._trades = fresh
        self._notify()

    def subscribe(self, listener: Callable[[], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                log.exception("Active trades listener failed")
