from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable

from close_rts.orders import Order, OrderNotification, OrderState, OrderTag

log = logging.getLogger(__name__)

OrderHandler = Callable[[Order], None]

_ALLOWED: dict[OrderState, frozenset[OrderState]] = {
    OrderState.SUBMITTED: frozenset(
        {OrderState.REGISTERED, OrderState.MATCHED, OrderState.CANCELLED, OrderState.REJECTED}
    ),
    OrderState.REGISTERED: frozenset({OrderState.MATCHED, OrderState.CANCELLED, OrderState.REJECTED}),
}


@dataclass
class _Subscription:
    state: OrderState
    handler: OrderHandler
    fired: bool = field(default=False)


class OrderLifecycle:
    """
    Order state machine + single dispatcher keyed by order id.

    Gateways call `publish()` from any thread; notifications are applied by
    `drain()` on the worker thread, so handlers never run concurrently with
    strategy evaluation. Transitions:

        Submitted -> Registered -> {Matched, Cancelled, Rejected}
        Submitted -> {Cancelled, Rejected}

    A Matched notification for a Submitted order is applied as Registered then
    Matched. Handlers registered with `on()` are one-shot: each fires at most
    once, in subscription order, and all of an order's remaining handlers are
    dropped when it reaches a terminal state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._orders: dict[str, Order] = {}
        self._handlers: dict[str, list[_Subscription]] = {}
        self._observers: list[OrderHandler] = []
        self._inbox: "queue.Queue[OrderNotification]" = queue.Queue()

    def track(self, order: Order) -> None:
        with self._lock:
            if order.order_id in self._orders:
                raise ValueError(f"Order already tracked: {order.order_id}")
            self._orders[order.order_id] = order
            self._handlers[order.order_id] = []

    def on(self, order_id: str, state: OrderState, handler: OrderHandler) -> None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise KeyError(f"Unknown order_id: {order_id}")
            if order.state.is_terminal:
                log.debug("Not subscribing to %s on terminal order %s", state.value, order_id)
                return
            self._handlers[order_id].append(_Subscription(state=state, handler=handler))

    def add_observer(self, observer: OrderHandler) -> None:
        """Observers see every applied transition and are never detached."""
        with self._lock:
            self._observers.append(observer)

    def publish(self, notification: OrderNotification) -> None:
        self._inbox.put(notification)

    def drain(self) -> int:
        processed = 0
        while True:
            try:
                note = self._inbox.get_nowait()
            except queue.Empty:
                return processed
            processed += 1
            self._apply(note)

    def orders(self) -> list[Order]:
        with self._lock:
            return list(self._orders.values())

    def has_pending(self, code: str, tag: OrderTag) -> bool:
        with self._lock:
            return any(o.code == code and o.tag is tag and o.is_active for o in self._orders.values())

    def _apply(self, note: OrderNotification) -> None:
        with self._lock:
            order = self._orders.get(note.order_id)
            if order is None:
                log.warning("Dropping %s notification for unknown order %s", note.state.value, note.order_id)
                return
            steps = [note.state]
            if note.state is OrderState.MATCHED and order.state is OrderState.SUBMITTED:
                steps = [OrderState.REGISTERED, OrderState.MATCHED]

        for state in steps:
            self._transition(order, state, note)

    def _transition(self, order: Order, state: OrderState, note: OrderNotification) -> None:
        with self._lock:
            if state not in _ALLOWED.get(order.state, frozenset()):
                log.debug("Ignoring %s -> %s for order %s", order.state.value, state.value, order.order_id)
                return
            order.state = state
            order.history.append(state)
            if note.filled is not None:
                order.filled = note.filled
            if note.avg_fill_price is not None:
                order.avg_fill_price = note.avg_fill_price
            if note.reason:
                order.reason = note.reason

            subs = self._handlers.get(order.order_id, [])
            due = [s for s in subs if s.state is state and not s.fired]
            for s in due:
                s.fired = True
            if state.is_terminal:
                self._handlers[order.order_id] = []
            else:
                self._handlers[order.order_id] = [s for s in subs if not s.fired]
            observers = list(self._observers)

        log.debug("Order %s %s -> %s", order.order_id, order.code, state.value)
        for observer in observers:
            self._call(observer, order)
        for s in due:
            self._call(s.handler, order)

    @staticmethod
    def _call(handler: OrderHandler, order: Order) -> None:
        try:
            handler(order)
        except Exception:
            log.exception("Order handler failed for %s (%s)", order.order_id, order.state.value)
