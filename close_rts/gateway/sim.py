from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from close_rts.gateway.base import OrderListener
from close_rts.instruments import InstrumentSpec
from close_rts.orders import Order, OrderNotification, OrderState
from close_rts.timeframe import Bar

log = logging.getLogger(__name__)


@dataclass
class _Quote:
    bid: Decimal | None = None
    ask: Decimal | None = None
    last: Decimal | None = None


class SimGateway:
    """
    In-memory gateway for tests and offline runs.

    Orders are kept in `orders`; nothing is filled unless `fill()` is called
    (or `auto_fill` is set). With `auto_register` the venue acknowledges every
    submission immediately.
    """

    def __init__(self, *, auto_register: bool = True, auto_fill: bool = False) -> None:
        self.auto_register = auto_register
        self.auto_fill = auto_fill
        self.orders: list[Order] = []
        self.connected = False
        self._lock = threading.Lock()
        self._quotes: dict[str, _Quote] = {}
        self._positions: dict[str, Decimal] = {}
        self._listener: OrderListener | None = None
        self._seq = 0

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def idle(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def set_order_listener(self, listener: OrderListener) -> None:
        self._listener = listener

    def set_market_data(
        self,
        instrument: InstrumentSpec,
        *,
        bid: Decimal | float | None = None,
        ask: Decimal | float | None = None,
        last: Decimal | float | None = None,
    ) -> None:
        with self._lock:
            self._quotes[instrument.code] = _Quote(bid=_dec(bid), ask=_dec(ask), last=_dec(last))

    def set_position(self, instrument: InstrumentSpec, quantity: Decimal | float) -> None:
        with self._lock:
            self._positions[instrument.code] = Decimal(str(quantity))

    def submit(self, order: Order) -> str:
        if not self.connected:
            raise RuntimeError("SimGateway is not connected")
        with self._lock:
            self._seq += 1
            broker_id = f"sim-{self._seq}"
            self.orders.append(order)
        log.info(
            "SIM order %s %s %s %s @ %s tag=%s",
            broker_id, order.request.side.value, order.request.quantity, order.code,
            order.request.limit_price, order.tag.value,
        )
        if self.auto_register:
            self._emit(OrderNotification(order.order_id, OrderState.REGISTERED))
        if self.auto_fill:
            self.fill(order.order_id)
        return broker_id

    def fill(self, order_id: str, price: Decimal | float | None = None) -> None:
        order = self._find(order_id)
        px = _dec(price) if price is not None else order.request.limit_price
        qty = order.request.quantity
        with self._lock:
            current = self._positions.get(order.code, Decimal("0"))
            self._positions[order.code] = current + qty * order.request.side.sign
        self._emit(OrderNotification(order_id, OrderState.MATCHED, filled=qty, avg_fill_price=px))

    def cancel(self, order_id: str) -> None:
        self._emit(OrderNotification(order_id, OrderState.CANCELLED))

    def reject(self, order_id: str, reason: str = "rejected") -> None:
        self._emit(OrderNotification(order_id, OrderState.REJECTED, reason=reason))

    def best_bid(self, instrument: InstrumentSpec) -> Decimal | None:
        with self._lock:
            return self._quotes.get(instrument.code, _Quote()).bid

    def best_ask(self, instrument: InstrumentSpec) -> Decimal | None:
        with self._lock:
            return self._quotes.get(instrument.code, _Quote()).ask

    def net_position(self, instrument: InstrumentSpec) -> Decimal:
        with self._lock:
            return self._positions.get(instrument.code, Decimal("0"))

    def latest_bars(self, instruments: Iterable[InstrumentSpec]) -> dict[str, Bar]:
        now = time.time()
        out: dict[str, Bar] = {}
        with self._lock:
            for inst in instruments:
                last = self._quotes.get(inst.code, _Quote()).last
                if last is None:
                    continue
                out[inst.code] = Bar(timestamp_epoch_s=now, open=last, high=last, low=last, close=last, volume=None)
        return out

    def _find(self, order_id: str) -> Order:
        with self._lock:
            for order in self.orders:
                if order.order_id == order_id:
                    return order
        raise KeyError(f"Unknown order_id: {order_id}")

    def _emit(self, note: OrderNotification) -> None:
        if self._listener is None:
            log.warning("No order listener installed; dropping %s for %s", note.state.value, note.order_id)
            return
        self._listener(note)


def _dec(value: Decimal | float | None) -> Decimal | None:
    return None if value is None else Decimal(str(value))
