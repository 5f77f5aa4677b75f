from __future__ import annotations

from decimal import Decimal
from typing import Callable, Iterable, Protocol

from close_rts.instruments import InstrumentSpec
from close_rts.orders import Order, OrderNotification
from close_rts.timeframe import Bar

OrderListener = Callable[[OrderNotification], None]


class OrderGateway(Protocol):
    """
    Broker-side collaborator.

    `submit` hands an order to the venue and returns the broker's order id.
    Lifecycle changes (registered, matched, cancelled, rejected) are reported
    later, possibly from another thread, through the listener installed with
    `set_order_listener`, keyed by the local `Order.order_id`.
    """

    def connect(self) -> None:
        ...

    def disconnect(self) -> None:
        ...

    def idle(self, seconds: float) -> None:
        """Wait between time frames while the gateway keeps processing events."""
        ...

    def set_order_listener(self, listener: OrderListener) -> None:
        ...

    def submit(self, order: Order) -> str:
        ...

    def best_bid(self, instrument: InstrumentSpec) -> Decimal | None:
        ...

    def best_ask(self, instrument: InstrumentSpec) -> Decimal | None:
        ...

    def net_position(self, instrument: InstrumentSpec) -> Decimal:
        ...

    def latest_bars(self, instruments: Iterable[InstrumentSpec]) -> dict[str, Bar]:
        ...
