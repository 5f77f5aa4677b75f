from __future__ import annotations

import json
import logging
import time

from close_rts.config import StrategyConfig, TradingConfig
from close_rts.gateway.base import OrderGateway
from close_rts.lifecycle import OrderHandler, OrderLifecycle
from close_rts.orders import (
    Order,
    OrderNotification,
    OrderRequest,
    OrderState,
    OrderTag,
    next_order_id,
    validate_order_request,
)
from close_rts.persistence import SqliteStore

log = logging.getLogger(__name__)


class OrderManager:
    """
    Single submission path for strategy orders:
    - strict safety gates for IBKR sends (live/token) and dry-run staging
    - reserves the order in the lifecycle before it reaches the gateway
    - persists run + orders + status transitions to SQLite (optional)
    """

    def __init__(
        self,
        gateway: OrderGateway,
        lifecycle: OrderLifecycle,
        cfg: TradingConfig,
        *,
        store: SqliteStore | None = None,
        params: StrategyConfig | None = None,
        confirm_token: str | None = None,
    ) -> None:
        self._gateway = gateway
        self._lifecycle = lifecycle
        self._cfg = cfg
        self._confirm_token = confirm_token
        self._store = store
        self._run_id: int | None = store.start_run(cfg, params) if store is not None else None
        gateway.set_order_listener(lifecycle.publish)
        lifecycle.add_observer(self._record_status)

    @property
    def lifecycle(self) -> OrderLifecycle:
        return self._lifecycle

    def close(self) -> None:
        if self._store is not None and self._run_id is not None:
            self._store.end_run(self._run_id)
        self._run_id = None

    def has_pending(self, code: str, tag: OrderTag) -> bool:
        return self._lifecycle.has_pending(code, tag)

    def submit(
        self,
        req: OrderRequest,
        *,
        on_registered: OrderHandler | None = None,
        on_matched: OrderHandler | None = None,
    ) -> Order:
        req = validate_order_request(req)
        self._authorize_send()

        order = Order(order_id=next_order_id(), request=req)
        self._lifecycle.track(order)
        if on_registered is not None:
            self._lifecycle.on(order.order_id, OrderState.REGISTERED, on_registered)
        if on_matched is not None:
            self._lifecycle.on(order.order_id, OrderState.MATCHED, on_matched)

        if self._cfg.dry_run:
            log.info("DRY RUN staged order %s: %s %s %s @ %s", order.order_id, req.side.value, req.quantity, req.instrument.code, req.limit_price)
            self._log_order(order)
            self._lifecycle.publish(OrderNotification(order.order_id, OrderState.REJECTED, reason="dry_run"))
            return order

        try:
            order.broker_order_id = self._gateway.submit(order)
        except Exception as exc:
            self._lifecycle.publish(OrderNotification(order.order_id, OrderState.REJECTED, reason=str(exc)))
            self._log_error("oms.submit", f"order_id={order.order_id} err={exc}")
            raise
        self._log_order(order)
        return order

    def _authorize_send(self) -> None:
        # Paper-only is enforced at connect-time in IBKRGateway; keep additional send gates here.
        if self._cfg.broker == "ibkr" and not self._cfg.dry_run:
            if not self._cfg.live_enabled:
                raise RuntimeError("IBKR sending blocked: TRADING_LIVE_ENABLED=false")
            if self._cfg.confirm_token_required:
                if not self._cfg.order_token:
                    raise RuntimeError("IBKR sending blocked: TRADING_ORDER_TOKEN missing")
                if self._confirm_token != self._cfg.order_token:
                    raise RuntimeError("IBKR sending blocked: confirm token mismatch")

    def _log_order(self, order: Order) -> None:
        if self._store is None or self._run_id is None:
            return
        self._store.log_order(self._run_id, broker=self._cfg.broker, order=order)

    def _record_status(self, order: Order) -> None:
        if self._store is None or self._run_id is None:
            return
        self._store.log_order_status_event(self._run_id, self._cfg.broker, order)
        # Keep "orders.status" reasonably up-to-date for recovery queries.
        self._store.update_order_status(order.order_id, order.state.value, order.broker_order_id)

    def _log_error(self, where: str, msg: str) -> None:
        if self._store is None or self._run_id is None:
            return
        self._store.log_error(self._run_id, where=where, message=json.dumps({"msg": msg, "ts": time.time()}))
