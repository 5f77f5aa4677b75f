from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from close_rts.config import StrategyConfig, TradingConfig
from close_rts.ledger import ActiveTrade
from close_rts.orders import Order, Side
from close_rts.prices import PriceSession, PriceSnapshot


class SqliteStore:
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    # -- runs -----------------------------------------------------------------

    def start_run(self, cfg: TradingConfig, params: StrategyConfig | None = None) -> int:
        payload: dict[str, Any] = {"trading": asdict(cfg)}
        if params is not None:
            payload["strategy"] = asdict(params)
        cur = self._conn.cursor()
        cur.execute(
            "INSERT INTO runs(started_epoch_s, config_json) VALUES(?, ?)",
            (time.time(), json.dumps(_to_jsonable(payload), sort_keys=True)),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def end_run(self, run_id: int) -> None:
        self._conn.execute("UPDATE runs SET ended_epoch_s=? WHERE id=?", (time.time(), int(run_id)))
        self._conn.commit()

    # -- orders ---------------------------------------------------------------

    def log_order(self, run_id: int, *, broker: str, order: Order) -> None:
        req = order.request
        self._conn.execute(
            "INSERT INTO orders(run_id, ts_epoch_s, broker, order_id, broker_order_id, instrument_symbol, side, "
            "quantity, limit_price, tag, request_json, status) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(run_id),
                time.time(),
                str(broker),
                str(order.order_id),
                order.broker_order_id,
                req.instrument.code,
                req.side.value,
                str(req.quantity),
                str(req.limit_price),
                req.tag.value,
                json.dumps(_to_jsonable(asdict(req)), sort_keys=True),
                order.state.value,
            ),
        )
        self._conn.commit()

    def update_order_status(self, order_id: str, status: str, broker_order_id: str | None = None) -> None:
        if broker_order_id is None:
            self._conn.execute("UPDATE orders SET status=? WHERE order_id=?", (str(status), str(order_id)))
        else:
            self._conn.execute(
                "UPDATE orders SET status=?, broker_order_id=? WHERE order_id=?",
                (str(status), str(broker_order_id), str(order_id)),
            )
        self._conn.commit()

    def get_latest_status(self, order_id: str) -> str | None:
        cur = self._conn.execute(
            "SELECT status FROM orders WHERE order_id=? ORDER BY ts_epoch_s DESC, id DESC LIMIT 1",
            (str(order_id),),
        )
        row = cur.fetchone()
        return str(row[0]) if row else None

    def log_order_status_event(self, run_id: int, broker: str, order: Order) -> None:
        self._conn.execute(
            "INSERT INTO order_status_events(run_id, ts_epoch_s, broker, order_id, status, filled, avg_fill_price, reason) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
            (
                int(run_id),
                time.time(),
                str(broker),
                str(order.order_id),
                order.state.value,
                str(order.filled),
                None if order.avg_fill_price is None else str(order.avg_fill_price),
                order.reason,
            ),
        )
        self._conn.commit()

    def log_error(self, run_id: int, *, where: str, message: str) -> None:
        self._conn.execute(
            "INSERT INTO errors(run_id, ts_epoch_s, where_text, message) VALUES(?, ?, ?, ?)",
            (int(run_id), time.time(), str(where), str(message)),
        )
        self._conn.commit()

    # -- session prices -------------------------------------------------------

    def save_price_snapshot(self, session: PriceSession, trade_date: date, snap: PriceSnapshot) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO price_snapshots(session, code, trade_date, price, time_iso) VALUES(?, ?, ?, ?, ?)",
            (session.value, snap.code, trade_date.isoformat(), str(snap.price), snap.time.isoformat()),
        )
        self._conn.commit()

    def list_price_dates(self, session: PriceSession, *, on_or_before: date) -> list[date]:
        """Distinct recorded trade dates for `session`, newest first."""
        cur = self._conn.execute(
            "SELECT DISTINCT trade_date FROM price_snapshots WHERE session=? AND trade_date<=? ORDER BY trade_date DESC",
            (session.value, on_or_before.isoformat()),
        )
        return [date.fromisoformat(str(row[0])) for row in cur.fetchall()]

    def load_price_snapshots(self, session: PriceSession, trade_date: date) -> dict[str, PriceSnapshot]:
        cur = self._conn.execute(
            "SELECT code, price, time_iso FROM price_snapshots WHERE session=? AND trade_date=?",
            (session.value, trade_date.isoformat()),
        )
        return {
            str(code): PriceSnapshot(code=str(code), price=Decimal(str(price)), time=datetime.fromisoformat(str(ts)))
            for code, price, ts in cur.fetchall()
        }

    # -- active trades --------------------------------------------------------

    def save_active_trades(self, strategy: str, trades: list[ActiveTrade]) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM active_trades WHERE strategy=?", (str(strategy),))
            self._conn.executemany(
                "INSERT INTO active_trades(strategy, code, side, volume, entry_price, opened_iso, stop_loss, take_profit) "
                "VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        str(strategy),
                        t.code,
                        t.side.value,
                        str(t.volume),
                        str(t.entry_price),
                        t.opened_at.isoformat(),
                        None if t.stop_loss_price is None else str(t.stop_loss_price),
                        None if t.take_profit_price is None else str(t.take_profit_price),
                    )
                    for t in trades
                ],
            )

    def load_active_trades(self, strategy: str) -> list[ActiveTrade]:
        cur = self._conn.execute(
            "SELECT code, side, volume, entry_price, opened_iso, stop_loss, take_profit FROM active_trades "
            "WHERE strategy=? ORDER BY code",
            (str(strategy),),
        )
        return [
            ActiveTrade(
                code=str(code),
                side=Side(str(side)),
                volume=Decimal(str(volume)),
                entry_price=Decimal(str(entry)),
                opened_at=datetime.fromisoformat(str(opened)),
                stop_loss_price=None if sl is None else Decimal(str(sl)),
                take_profit_price=None if tp is None else Decimal(str(tp)),
            )
            for code, side, volume, entry, opened, sl, tp in cur.fetchall()
        ]

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version(
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_epoch_s REAL NOT NULL,
                ended_epoch_s REAL,
                config_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS orders(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                broker TEXT NOT NULL,
                order_id TEXT NOT NULL,
                broker_order_id TEXT,
                instrument_symbol TEXT,
                side TEXT,
                quantity TEXT,
                limit_price TEXT,
                tag TEXT,
                request_json TEXT NOT NULL,
                status TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_orders_order_id ON orders(order_id);
            CREATE INDEX IF NOT EXISTS idx_orders_symbol ON orders(instrument_symbol);

            CREATE TABLE IF NOT EXISTS order_status_events(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                broker TEXT NOT NULL,
                order_id TEXT NOT NULL,
                status TEXT NOT NULL,
                filled TEXT,
                avg_fill_price TEXT,
                reason TEXT,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_order_status_events_order_id ON order_status_events(order_id);

            CREATE TABLE IF NOT EXISTS errors(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                where_text TEXT NOT NULL,
                message TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE TABLE IF NOT EXISTS price_snapshots(
                session TEXT NOT NULL,
                code TEXT NOT NULL,
                trade_date TEXT NOT NULL,
                price TEXT NOT NULL,
                time_iso TEXT NOT NULL,
                PRIMARY KEY(session, code, trade_date)
            );

            CREATE TABLE IF NOT EXISTS active_trades(
                strategy TEXT NOT NULL,
                code TEXT NOT NULL,
                side TEXT NOT NULL,
                volume TEXT NOT NULL,
                entry_price TEXT NOT NULL,
                opened_iso TEXT NOT NULL,
                stop_loss TEXT,
                take_profit TEXT,
                PRIMARY KEY(strategy, code)
            );
            """
        )
        cur = self._conn.execute("SELECT COUNT(*) FROM schema_version")
        if int(cur.fetchone()[0]) == 0:
            self._conn.execute("INSERT INTO schema_version(version) VALUES(1)")
        self._conn.commit()


def _to_jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(v) for v in obj]
    if isinstance(obj, (str, int, float)) or obj is None:
        return obj
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)
