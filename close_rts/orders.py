from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum

from close_rts.instruments import InstrumentSpec, validate_instrument


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class OrderTag(str, Enum):
    """Purpose of an order; replaces free-text comment matching."""

    ENTER = "enter"
    TIME_EXIT = "time_exit"


class OrderState(str, Enum):
    SUBMITTED = "Submitted"
    REGISTERED = "Registered"
    MATCHED = "Matched"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({OrderState.MATCHED, OrderState.CANCELLED, OrderState.REJECTED})


@dataclass(frozen=True)
class OrderRequest:
    instrument: InstrumentSpec
    side: Side
    quantity: Decimal
    limit_price: Decimal
    tag: OrderTag
    order_type: str = "LMT"
    expiry: datetime | None = None  # None = day order
    comment: str = ""


def validate_order_request(req: OrderRequest) -> OrderRequest:
    inst = validate_instrument(req.instrument)
    try:
        side = Side(str(getattr(req.side, "value", req.side)).strip().upper())
    except ValueError as exc:
        raise ValueError("side must be BUY or SELL") from exc
    order_type = req.order_type.strip().upper()
    if order_type != "LMT":
        raise ValueError(f"Unsupported order_type: {req.order_type}")
    quantity = Decimal(str(req.quantity))
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    if req.limit_price is None:
        raise ValueError("limit_price is required for LMT orders")
    price = Decimal(str(req.limit_price))
    if price <= 0:
        raise ValueError("limit_price must be positive")
    tag = OrderTag(req.tag)
    return replace(req, instrument=inst, side=side, order_type=order_type, quantity=quantity, limit_price=price, tag=tag)


_ids = itertools.count(1)
_ids_lock = threading.Lock()


def next_order_id() -> str:
    with _ids_lock:
        return f"cr-{next(_ids)}"


@dataclass
class Order:
    """
    An order submitted by the strategy. Mutated only by `OrderLifecycle`.
    """

    order_id: str
    request: OrderRequest
    state: OrderState = OrderState.SUBMITTED
    broker_order_id: str | None = None
    filled: Decimal = Decimal("0")
    avg_fill_price: Decimal | None = None
    reason: str | None = None
    history: list[OrderState] = field(default_factory=lambda: [OrderState.SUBMITTED])

    @property
    def code(self) -> str:
        return self.request.instrument.code

    @property
    def tag(self) -> OrderTag:
        return self.request.tag

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal


@dataclass(frozen=True)
class OrderNotification:
    """A lifecycle transition reported by a gateway for a local order id."""

    order_id: str
    state: OrderState
    filled: Decimal | None = None
    avg_fill_price: Decimal | None = None
    reason: str | None = None
