from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from close_rts.config import IBKRConfig, StrategyConfig, TradingConfig
from close_rts.gateway.base import OrderGateway
from close_rts.ledger import ActiveTradeLedger
from close_rts.lifecycle import OrderLifecycle
from close_rts.logging_setup import configure_logging
from close_rts.oms import OrderManager
from close_rts.persistence import SqliteStore
from close_rts.prices import InMemoryPriceSource, PriceRecorder, PriceSnapshotSource, StoredPriceSource
from close_rts.strategy import CloseRtsStrategy
from close_rts.timeframe import TimeFrameEvent, seconds_until_next_frame

log = logging.getLogger(__name__)

WORK_STOP_AT = time(23, 50)
TEST_STOP_AT = time(23, 49)


@dataclass
class AutoRunner:
    """
    Always-on runner that:
    - connects the gateway
    - optionally reloads persisted active trades
    - builds a time-frame event from the gateway's latest bars every frame
    - records session prices and drives the strategy
    - drains order notifications on this thread before and after each frame
    - stops at the configured stop time (positions and orders are left alone)

    For tests, pass `clock`, set `max_ticks` and `sleep_seconds=0`.
    """

    gateway: OrderGateway
    config: TradingConfig
    params: StrategyConfig
    confirm_token: str | None = None
    prices: PriceSnapshotSource | None = None
    clock: Callable[[], datetime] | None = None
    sleep_seconds: float | None = None  # None = wait for the next frame boundary
    max_ticks: int | None = None
    ledger: ActiveTradeLedger = field(default_factory=ActiveTradeLedger)

    def now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(ZoneInfo(self.params.market_tz)).replace(tzinfo=None)

    def stop_time(self, started: datetime) -> datetime:
        at = WORK_STOP_AT if self.params.work_contour else TEST_STOP_AT
        return datetime.combine(started.date(), at)

    def run(self) -> None:
        store = SqliteStore(self.config.db_path) if self.config.db_path else None
        lifecycle = OrderLifecycle()
        oms = OrderManager(
            self.gateway, lifecycle, self.config, store=store, params=self.params, confirm_token=self.confirm_token
        )
        strategy_name = CloseRtsStrategy.name
        if store is not None:
            if self.params.load_active_trades:
                trades = store.load_active_trades(strategy_name)
                self.ledger.replace_all(trades)
                log.info("Loaded %d active trade(s): %s", len(trades), ",".join(t.code for t in trades) or "-")
            self.ledger.subscribe(lambda: store.save_active_trades(strategy_name, self.ledger.snapshot()))

        prices = self.prices
        if prices is None:
            prices = StoredPriceSource(store, today=lambda: self.now().date()) if store is not None else InMemoryPriceSource()
        recorder = PriceRecorder(store, [i.code for i in self.params.instruments]) if store is not None else None
        strategy = CloseRtsStrategy(self.params, self.gateway, oms, self.ledger, prices, clock=self.now)

        try:
            self.gateway.connect()
            strategy.on_start()
            stop_at = self.stop_time(self.now())
            log.info("%s will stop at %s", strategy_name, stop_at)
            frame = timedelta(seconds=self.params.timeframe_seconds)

            tick = 0
            while True:
                now = self.now()
                if now >= stop_at + frame:
                    log.info("Stop time %s already passed", stop_at.strftime("%H:%M"))
                    return
                tick += 1
                try:
                    self._tick(now, lifecycle, strategy, recorder)
                except Exception as exc:
                    log.error("Time frame at %s failed: %s", now, exc)
                # The frame that reaches the stop time is still processed so
                # the closing snapshot is recorded.
                if now >= stop_at:
                    log.info("Stop time %s reached", stop_at.strftime("%H:%M"))
                    return

                if self.max_ticks is not None and tick >= self.max_ticks:
                    return
                wait = self.sleep_seconds
                if wait is None:
                    wait = seconds_until_next_frame(self.now(), self.params.timeframe_seconds)
                self.gateway.idle(wait)
        finally:
            lifecycle.drain()
            oms.close()
            if store is not None:
                store.close()
            self.gateway.disconnect()

    def _tick(
        self,
        now: datetime,
        lifecycle: OrderLifecycle,
        strategy: CloseRtsStrategy,
        recorder: PriceRecorder | None,
    ) -> None:
        lifecycle.drain()
        bars = self.gateway.latest_bars(self.params.instruments)
        event = TimeFrameEvent(market_time=now, last_bars=bars)
        if recorder is not None:
            recorder.on_time_frame(event)
        strategy.on_time_frame(event)
        lifecycle.drain()


def _load_dotenv_if_present() -> None:
    if not os.path.exists(".env"):
        return
    with open(".env", "r", encoding="utf-8") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            os.environ.setdefault(k.strip(), v.strip().strip('"').strip("'"))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="close_rts.runner", description="CloseRts time-gated runner (paper-only enforced)")
    p.add_argument("--broker", choices=["ibkr", "sim"], default=None, help="Override TRADING_BROKER")
    p.add_argument("--confirm-token", default=None, help="Must match TRADING_ORDER_TOKEN to send IBKR orders")
    p.add_argument("--ibkr-host", default=None)
    p.add_argument("--ibkr-port", default=None)
    p.add_argument("--ibkr-client-id", default=None)
    p.add_argument("--db-path", default=None, help="Override TRADING_DB_PATH")
    p.add_argument("--log-file", default=None, help="Override TRADING_LOG_FILE")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--load-active-trades", action="store_true", help="Reload active trades persisted by a previous run")
    p.add_argument("--max-ticks", type=int, default=None)
    return p


def main(argv: list[str] | None = None) -> int:
    _load_dotenv_if_present()
    cfg = TradingConfig.from_env()
    params = StrategyConfig.from_env()
    args = build_parser().parse_args(argv)

    ibkr = IBKRConfig(
        host=args.ibkr_host or cfg.ibkr.host,
        port=int(args.ibkr_port or cfg.ibkr.port),
        client_id=int(args.ibkr_client_id or cfg.ibkr.client_id),
    )
    cfg = replace(
        cfg,
        broker=args.broker or cfg.broker,
        db_path=args.db_path or cfg.db_path,
        log_file=args.log_file or cfg.log_file,
        ibkr=ibkr,
    )
    if args.load_active_trades:
        params = replace(params, load_active_trades=True)

    configure_logging(level=args.log_level, log_file=cfg.log_file, market_tz=params.market_tz)

    if not params.instruments:
        log.error("No instruments configured (set CLOSE_RTS_INSTRUMENTS)")
        return 2

    if cfg.broker == "sim":
        from close_rts.gateway.sim import SimGateway

        gateway: OrderGateway = SimGateway()
    else:
        from close_rts.gateway.ibkr import IBKRGateway

        gateway = IBKRGateway(cfg.ibkr, require_paper=True)

    runner = AutoRunner(
        gateway=gateway,
        config=cfg,
        params=params,
        confirm_token=args.confirm_token,
        max_ticks=args.max_ticks,
    )
    try:
        runner.run()
    except KeyboardInterrupt:
        log.info("Interrupted by user")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
