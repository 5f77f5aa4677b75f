import logging
import os
import sqlite3
import tempfile
import unittest
from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest import mock

from close_rts.config import IBKRConfig, StrategyConfig, TradingConfig
from close_rts.gateway.sim import SimGateway
from close_rts.instruments import InstrumentSpec
from close_rts.ledger import ActiveTrade
from close_rts.orders import Side
from close_rts.persistence import SqliteStore
from close_rts.prices import PriceSession, PriceSnapshot
from close_rts.runner import AutoRunner, main

logging.disable(logging.CRITICAL)

RTS = InstrumentSpec(kind="STK", symbol="RTS")


class _Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


class _SteppingGateway(SimGateway):
    """Each idle call moves the market clock one frame forward."""

    def __init__(self, clock, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock

    def idle(self, seconds):
        self._clock.now += timedelta(minutes=1)


class TestAutoRunner(unittest.TestCase):
    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".sqlite3")
        os.close(fd)
        self.addCleanup(self._remove_db)
        self.cfg = TradingConfig(broker="sim", dry_run=False, db_path=self.path, ibkr=IBKRConfig())

    def _remove_db(self):
        try:
            os.remove(self.path)
        except OSError:
            pass

    def _params(self, **overrides):
        fields = dict(
            instruments=(RTS,),
            volumes={"RTS": Decimal("1")},
            day_rate=Decimal("5"),
            evening_rate=Decimal("3"),
        )
        fields.update(overrides)
        return StrategyConfig(**fields)

    def test_entry_gate_places_one_order_from_recorded_prices(self):
        store = SqliteStore(self.path)
        t = datetime(2025, 2, 28, 23, 49)
        store.save_price_snapshot(PriceSession.CLOSING, date(2025, 2, 28), PriceSnapshot("RTS", Decimal("110"), t))
        store.save_price_snapshot(PriceSession.EVENING, date(2025, 3, 3), PriceSnapshot("RTS", Decimal("100"), t))
        store.close()

        clock = _Clock(datetime(2025, 3, 3, 23, 44))
        gateway = _SteppingGateway(clock)
        gateway.set_market_data(RTS, bid=95, ask=97, last=96)
        runner = AutoRunner(gateway=gateway, config=self.cfg, params=self._params(), clock=clock, sleep_seconds=0.0, max_ticks=3)
        runner.run()

        self.assertEqual(len(gateway.orders), 1)
        self.assertFalse(gateway.connected)
        self.assertEqual(len(runner.ledger), 0)
        con = sqlite3.connect(self.path)
        try:
            rows = con.execute("SELECT tag, side, limit_price, status FROM orders").fetchall()
        finally:
            con.close()
        self.assertEqual(rows, [("enter", "BUY", "96.00", "Registered")])

    def test_stops_at_stop_time(self):
        clock = _Clock(datetime(2025, 3, 3, 23, 49, 30))
        gateway = _SteppingGateway(clock)
        runner = AutoRunner(
            gateway=gateway, config=self.cfg, params=self._params(work_contour=False), clock=clock, sleep_seconds=0.0, max_ticks=5
        )
        runner.run()
        self.assertEqual(clock.now, datetime(2025, 3, 3, 23, 49, 30))
        self.assertFalse(gateway.connected)

    def test_closing_price_recorded_on_stop_frame(self):
        clock = _Clock(datetime(2025, 3, 3, 23, 46))
        gateway = _SteppingGateway(clock)
        gateway.set_market_data(RTS, bid=99, ask=101, last=100)
        runner = AutoRunner(
            gateway=gateway, config=self.cfg, params=self._params(work_contour=False), clock=clock, sleep_seconds=0.0, max_ticks=10
        )
        runner.run()
        self.assertEqual(clock.now, datetime(2025, 3, 3, 23, 49))

        store = SqliteStore(self.path)
        try:
            self.assertEqual(store.list_price_dates(PriceSession.CLOSING, on_or_before=date(2025, 3, 3)), [date(2025, 3, 3)])
            self.assertEqual(store.load_price_snapshots(PriceSession.CLOSING, date(2025, 3, 3))["RTS"].price, Decimal("100"))
        finally:
            store.close()

    def test_started_after_stop_time_does_nothing(self):
        clock = _Clock(datetime(2025, 3, 3, 23, 55))
        gateway = _SteppingGateway(clock)
        gateway.set_market_data(RTS, bid=99, ask=101, last=100)
        runner = AutoRunner(gateway=gateway, config=self.cfg, params=self._params(), clock=clock, sleep_seconds=0.0, max_ticks=5)
        runner.run()
        store = SqliteStore(self.path)
        try:
            self.assertEqual(store.list_price_dates(PriceSession.CLOSING, on_or_before=date(2025, 3, 3)), [])
        finally:
            store.close()

    def test_reloaded_trade_is_exited_and_forgotten(self):
        store = SqliteStore(self.path)
        store.save_active_trades(
            "CloseRts",
            [ActiveTrade("RTS", Side.BUY, Decimal("1"), Decimal("100"), datetime(2025, 3, 2, 23, 45))],
        )
        store.close()

        clock = _Clock(datetime(2025, 3, 3, 10, 4))
        gateway = _SteppingGateway(clock, auto_fill=True)
        gateway.set_position(RTS, 1)
        gateway.set_market_data(RTS, bid=99, ask=101, last=100)
        runner = AutoRunner(
            gateway=gateway,
            config=self.cfg,
            params=self._params(load_active_trades=True),
            clock=clock,
            sleep_seconds=0.0,
            max_ticks=3,
        )
        runner.run()

        (order,) = gateway.orders
        self.assertIs(order.request.side, Side.SELL)
        self.assertEqual(order.request.limit_price, Decimal("99"))
        self.assertEqual(gateway.net_position(RTS), Decimal("0"))
        self.assertEqual(len(runner.ledger), 0)

        store = SqliteStore(self.path)
        try:
            self.assertEqual(store.load_active_trades("CloseRts"), [])
            self.assertEqual(store.get_latest_status(order.order_id), "Matched")
        finally:
            store.close()


class TestMain(unittest.TestCase):
    def tearDown(self):
        for h in list(logging.getLogger().handlers):
            logging.getLogger().removeHandler(h)
            h.close()

    def test_requires_instruments(self):
        with mock.patch.dict(os.environ, {}, clear=True), mock.patch("close_rts.runner._load_dotenv_if_present"):
            self.assertEqual(main(["--broker", "sim"]), 2)

    def test_sim_broker_single_tick(self):
        env = {"CLOSE_RTS_INSTRUMENTS": "STK:AAPL", "CLOSE_RTS_VOLUMES": "AAPL=1", "TRADING_DRY_RUN": "true"}
        with mock.patch.dict(os.environ, env, clear=True), mock.patch("close_rts.runner._load_dotenv_if_present"):
            self.assertEqual(main(["--broker", "sim", "--max-ticks", "1", "--log-level", "WARNING"]), 0)
