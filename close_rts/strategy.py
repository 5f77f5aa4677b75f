"""
CloseRts: time-gated entry on close/evening price gaps with a forced time exit.

Every time frame the strategy checks the clock (nudged by a few seconds):

- 10:05  exit every active trade at the best opposing quote;
- 23:45  for instruments with no active trade and no pending entry, compare
         the prior-day close, today's day-session (evening) close and the
         last bar, and place at most one limit entry per instrument.

Each gate fires at most once per trading date.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable
from zoneinfo import ZoneInfo

from close_rts.config import StrategyConfig
from close_rts.gateway.base import OrderGateway
from close_rts.instruments import InstrumentSpec
from close_rts.ledger import ActiveTrade, ActiveTradeLedger
from close_rts.oms import OrderManager
from close_rts.orders import Order, OrderRequest, OrderTag, Side
from close_rts.prices import PriceSnapshotSource
from close_rts.timeframe import DailyGuard, Gate, TimeFrameEvent, resolve_gate

log = logging.getLogger(__name__)

ENTRY_EXPIRY = timedelta(days=1)


def decide_entry(
    close: Decimal,
    evening: Decimal,
    last: Decimal,
    *,
    day_rate: Decimal,
    evening_rate: Decimal,
) -> Side | None:
    """First matching rule wins; None means no entry."""
    if evening - close > day_rate:
        return Side.SELL
    if close - evening > day_rate:
        if last - evening > evening_rate:
            return Side.SELL
        if evening - last > evening_rate:
            return Side.BUY
    return None


def protective_levels(instrument: InstrumentSpec, side: Side, price: Decimal, params: StrategyConfig) -> tuple[Decimal, Decimal]:
    """(stop-loss, take-profit) prices for a position opened at `price`."""
    sl = params.stop_loss_percent / Decimal(100)
    tp = params.take_profit_percent / Decimal(100)
    if side is Side.SELL:
        return instrument.shrink_price(price * (1 + sl)), instrument.shrink_price(price * (1 - tp))
    return instrument.shrink_price(price * (1 - sl)), instrument.shrink_price(price * (1 + tp))


class CloseRtsStrategy:
    name = "CloseRts"

    def __init__(
        self,
        params: StrategyConfig,
        gateway: OrderGateway,
        orders: OrderManager,
        ledger: ActiveTradeLedger,
        prices: PriceSnapshotSource,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._params = params
        self._gateway = gateway
        self._orders = orders
        self._ledger = ledger
        self._prices = prices
        self._clock = clock
        self._guard = DailyGuard()
        # Held across "no pending entry" check, reservation and submission.
        self._lock = threading.Lock()

    def on_start(self) -> None:
        p = self._params
        log.info(
            "Starting %s: stop-loss %%=%s take-profit %%=%s day rate=%s evening rate=%s instruments=%s",
            self.name, p.stop_loss_percent, p.take_profit_percent, p.day_rate, p.evening_rate,
            ",".join(i.code for i in p.instruments),
        )
        closing = self._prices.closing_prices(1)
        for inst in p.instruments:
            snap = closing.get(inst.code)
            if snap is None:
                log.info("Previous close %s: n/a", inst.code)
            else:
                log.info("Previous close %s: %s at %s", inst.code, snap.price, snap.time.isoformat())

    def on_time_frame(self, event: TimeFrameEvent) -> list[Order]:
        gate = resolve_gate(event.market_time)
        if gate is None:
            return []
        if not self._guard.claim(gate.value, event.market_time):
            log.warning("%s gate already fired today; ignoring event at %s", gate.value, event.market_time)
            return []

        if gate is Gate.TIME_EXIT:
            submitted = []
            for inst in self._params.instruments:
                if self._ledger.count(inst.code) == 0:
                    continue
                log.info("TIME EXIT %s: %s, exiting at the best quote", inst.code, event.market_time.strftime("%H:%M"))
                order = self._guarded(inst, lambda i=inst: self.exit_by_time(i))
                if order is not None:
                    submitted.append(order)
            return submitted

        submitted = []
        for inst in self._params.instruments:
            order = self._guarded(inst, lambda i=inst: self._evaluate_entry(i, event))
            if order is not None:
                submitted.append(order)
        return submitted

    def _guarded(self, inst: InstrumentSpec, action: Callable[[], Order | None]) -> Order | None:
        try:
            return action()
        except Exception as exc:
            log.error("%s: order for %s failed: %s", self.name, inst.code, exc)
            return None

    # -- time exit ------------------------------------------------------------

    def exit_by_time(self, inst: InstrumentSpec) -> Order | None:
        position = self._gateway.net_position(inst)
        if position == 0:
            log.debug("No position in %s; nothing to exit", inst.code)
            return None

        side = Side.SELL if position > 0 else Side.BUY
        quote = self._gateway.best_bid(inst) if side is Side.SELL else self._gateway.best_ask(inst)
        book_side = "bid" if side is Side.SELL else "ask"
        if quote is None:
            log.error("TIME EXIT %s: no best %s available; skipping", inst.code, book_side)
            return None

        req = OrderRequest(
            instrument=inst,
            side=side,
            quantity=abs(position),
            limit_price=inst.shrink_price(quote),
            tag=OrderTag.TIME_EXIT,
            comment=f"{self.name}, t",
        )

        def on_registered(order: Order) -> None:
            log.info("TIME EXIT %s: exit order %s registered at the best %s", inst.code, order.order_id, book_side)

        def on_matched(order: Order) -> None:
            self._ledger.remove(inst.code)
            log.info("TIME EXIT %s: position closed at the best %s (order %s)", inst.code, book_side, order.order_id)

        log.info("Registering time exit for %s: %s %s @ %s", inst.code, side.value, req.quantity, req.limit_price)
        return self._orders.submit(req, on_registered=on_registered, on_matched=on_matched)

    # -- entry ----------------------------------------------------------------

    def _evaluate_entry(self, inst: InstrumentSpec, event: TimeFrameEvent) -> Order | None:
        with self._lock:
            if self._ledger.count(inst.code) != 0:
                return None
            if self._orders.has_pending(inst.code, OrderTag.ENTER):
                log.debug("Entry order for %s already pending", inst.code)
                return None

            log.info("ENTRY CHECK %s: %s, checking day and evening gaps", inst.code, event.market_time.strftime("%H:%M"))

            closing = self._prices.closing_prices(1)
            if inst.code not in closing:
                log.error("Could not read previous-day closing price for %s", inst.code)
                return None
            evening_prices = self._prices.evening_prices(0)
            if inst.code not in evening_prices:
                log.error("Could not read day-session closing price for %s", inst.code)
                return None
            bar = event.last_bars.get(inst.code)
            if bar is None:
                log.error("No last bar for %s in time frame at %s", inst.code, event.market_time)
                return None

            close = closing[inst.code].price
            evening = evening_prices[inst.code].price
            last = bar.close
            log.info("PRICES %s: previous close=%s day-session close=%s last=%s", inst.code, close, evening, last)

            side = decide_entry(
                close, evening, last,
                day_rate=self._params.day_rate,
                evening_rate=self._params.evening_rate,
            )
            if side is None:
                return None
            return self._submit_entry(inst, side, last)

    def _submit_entry(self, inst: InstrumentSpec, side: Side, last: Decimal) -> Order:
        price = inst.shrink_price(last)
        volume = self._params.volume_for(inst.code)
        stop, _ = protective_levels(inst, side, price, self._params)
        req = OrderRequest(
            instrument=inst,
            side=side,
            quantity=volume,
            limit_price=price,
            tag=OrderTag.ENTER,
            expiry=self._market_now() + ENTRY_EXPIRY,
            comment=f"{self.name}, enter",
        )
        log.info(
            "ENTRY ORDER %s: registering %s @ %s volume %s, stop at %s",
            inst.code, side.value, price, volume, stop,
        )
        return self._orders.submit(req, on_matched=lambda order: self._on_entry_matched(inst, order))

    def _market_now(self) -> datetime:
        """Clock reading as an aware datetime; naive readings are market local time."""
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=ZoneInfo(self._params.market_tz))
        return now

    def _on_entry_matched(self, inst: InstrumentSpec, order: Order) -> None:
        req = order.request
        price = order.avg_fill_price or req.limit_price
        stop, take = protective_levels(inst, req.side, price, self._params)
        trade = ActiveTrade(
            code=inst.code,
            side=req.side,
            volume=order.filled or req.quantity,
            entry_price=price,
            opened_at=self._clock(),
            stop_loss_price=stop,
            take_profit_price=take,
        )
        if self._ledger.add(trade):
            log.info("ENTRY FILLED %s: %s %s @ %s (stop %s, take %s)", inst.code, req.side.value, trade.volume, price, stop, take)
