"""
IBKR gateway built on ib_insync.

- ib_insync is imported lazily so the rest of the package works without it
- qualified contracts are cached per instrument
- order status changes are forwarded as lifecycle notifications
- paper-only guard at connect time
"""

from __future__ import annotations

import datetime as dt
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from close_rts.config import IBKRConfig
from close_rts.gateway.base import OrderListener
from close_rts.instruments import InstrumentSpec, validate_instrument
from close_rts.orders import Order, OrderNotification, OrderState
from close_rts.timeframe import Bar

log = logging.getLogger(__name__)

_STATUS_MAP: dict[str, OrderState] = {
    "PreSubmitted": OrderState.REGISTERED,
    "Submitted": OrderState.REGISTERED,
    "Filled": OrderState.MATCHED,
    "Cancelled": OrderState.CANCELLED,
    "ApiCancelled": OrderState.CANCELLED,
    "Inactive": OrderState.REJECTED,
}


class IBKRDependencyError(RuntimeError):
    """Raised when ib_insync cannot be imported."""


class IBKRConnectionError(RuntimeError):
    """Raised when TWS/IB Gateway is unreachable."""


@dataclass(frozen=True)
class _Factories:
    IB: Any
    Stock: Any
    Future: Any
    Forex: Any
    LimitOrder: Any


def _load_ib_insync_factories() -> _Factories:
    """Load ib_insync classes lazily."""
    import warnings

    # Suppress third-party deprecations on newer Python versions.
    warnings.filterwarnings(
        "ignore",
        category=DeprecationWarning,
        message=r".*get_event_loop_policy.*"
    )

    _ensure_thread_event_loop()

    try:
        from ib_insync import IB, Forex, Future, LimitOrder, Stock
    except Exception as exc:
        raise IBKRDependencyError(
            "Failed to import 'ib_insync' (check your environment)."
        ) from exc

    return _Factories(IB=IB, Stock=Stock, Future=Future, Forex=Forex, LimitOrder=LimitOrder)


def _ensure_thread_event_loop() -> None:
    """Ensure an asyncio event loop exists for the current thread."""
    import asyncio
    try:
        asyncio.get_event_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())


@dataclass
class IBKRGateway:
    """
    Usage:
        gateway = IBKRGateway(config=IBKRConfig(...))
        gateway.set_order_listener(lifecycle.publish)
        gateway.connect()
        gateway.submit(order)
        gateway.disconnect()
    """

    config: IBKRConfig
    require_paper: bool = True
    ib_factory: Callable[[], Any] | None = None
    quote_timeout: float = 1.0
    quote_poll_interval: float = 0.05
    bar_size: str = "1 min"

    _factories: _Factories | None = field(default=None, init=False, repr=False)
    _ib: Any | None = field(default=None, init=False, repr=False)
    _listener: OrderListener | None = field(default=None, init=False, repr=False)
    _contracts: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _trades: dict[str, tuple[Any, Callable[[Any], None]]] = field(default_factory=dict, init=False, repr=False)
    _last_status: dict[str, OrderState] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _ensure_factories(self) -> _Factories:
        if self._factories is None:
            self._factories = _load_ib_insync_factories()
        return self._factories

    def _require_ib(self) -> Any:
        if self._ib is None:
            raise RuntimeError("Gateway is not connected")
        return self._ib

    def set_order_listener(self, listener: OrderListener) -> None:
        self._listener = listener

    def connect(self) -> None:
        _ensure_thread_event_loop()
        factories = self._ensure_factories()
        self._ib = (self.ib_factory or factories.IB)()

        log.info(
            "Connecting to IBKR %s:%s clientId=%s",
            self.config.host, self.config.port, self.config.client_id
        )

        # Preflight check for real connections
        if self.ib_factory is None:
            _preflight_check_socket(self.config.host, self.config.port)

        try:
            self._ib.connect(self.config.host, self.config.port, clientId=self.config.client_id)
        except Exception as exc:
            try:
                self._ib.disconnect()
            except Exception:
                pass
            self._ib = None
            raise IBKRConnectionError(
                "Failed to connect to IBKR TWS/IB Gateway. Ensure TWS/IBG is running, "
                "you are logged in to Paper Trading, API access is enabled, and "
                "IBKR_PORT matches the configured API port."
            ) from exc

        log.info("Connected")

        if self.require_paper:
            self._assert_paper_trading()

    def disconnect(self) -> None:
        if self._ib is None:
            return
        try:
            self._ib.disconnect()
        except Exception as exc:
            log.warning("IBKR disconnect failed: %s", exc)
        self._ib = None
        self._contracts.clear()
        self._trades.clear()
        self._last_status.clear()
        log.info("Disconnected")

    def idle(self, seconds: float) -> None:
        """Sleep while letting ib_insync process incoming events."""
        if self._ib is None:
            time.sleep(max(0.0, seconds))
            return
        self._ib.sleep(max(0.0, seconds))

    # -- contracts ------------------------------------------------------------

    def _to_contract(self, instrument: InstrumentSpec) -> Any:
        factories = self._ensure_factories()
        spec = validate_instrument(instrument)

        if spec.kind == "STK":
            return factories.Stock(spec.symbol, spec.exchange, spec.currency)
        if spec.kind == "FUT":
            return factories.Future(spec.symbol, spec.expiry, spec.exchange, currency=spec.currency)
        if spec.kind == "FX":
            return factories.Forex(spec.symbol)

        raise ValueError(f"Unsupported instrument kind: {spec.kind}")

    def _qualified(self, instrument: InstrumentSpec) -> Any:
        ib = self._require_ib()
        cached = self._contracts.get(instrument.code)
        if cached is not None:
            return cached
        qualified = ib.qualifyContracts(self._to_contract(instrument))
        if not qualified:
            raise RuntimeError(f"Failed to qualify contract for {instrument.code}")
        self._contracts[instrument.code] = qualified[0]
        return qualified[0]

    # -- orders ---------------------------------------------------------------

    def submit(self, order: Order) -> str:
        _ensure_thread_event_loop()
        ib = self._require_ib()
        req = order.request
        contract = self._qualified(req.instrument)
        ib_order = self._build_order(order)

        trade = ib.placeOrder(contract, ib_order)
        broker_id = str(getattr(trade.order, "orderId", "unknown"))

        def on_status(t: Any, oid: str = order.order_id) -> None:
            self._on_status(oid, t)

        with self._lock:
            self._trades[order.order_id] = (trade, on_status)
        trade.statusEvent += on_status

        log.info(
            "Order placed symbol=%s side=%s qty=%s price=%s tif=%s orderId=%s ref=%s",
            req.instrument.code, req.side.value, req.quantity, req.limit_price,
            ib_order.tif, broker_id, order.order_id,
        )
        # Status may already be known when placeOrder returns.
        self._on_status(order.order_id, trade)
        return broker_id

    def _build_order(self, order: Order) -> Any:
        factories = self._ensure_factories()
        req = order.request
        tif = "GTD" if req.expiry is not None else "DAY"
        ib_order = factories.LimitOrder(req.side.value, float(req.quantity), float(req.limit_price), tif=tif)
        if req.expiry is not None:
            ib_order.goodTillDate = _format_ibkr_dt(req.expiry)
        ib_order.orderRef = req.comment or order.order_id
        return ib_order

    def _on_status(self, order_id: str, trade: Any) -> None:
        status = str(getattr(getattr(trade, "orderStatus", None), "status", ""))
        state = _STATUS_MAP.get(status)
        if state is None:
            return
        with self._lock:
            if self._last_status.get(order_id) is state:
                return
            self._last_status[order_id] = state
            tracked = None
            if state.is_terminal:
                self._last_status.pop(order_id, None)
                tracked = self._trades.pop(order_id, None)
        if tracked is not None:
            # No further transitions are possible; stop listening to this trade.
            tracked_trade, handler = tracked
            tracked_trade.statusEvent -= handler
        if self._listener is None:
            log.warning("No order listener installed; dropping %s for %s", state.value, order_id)
            return
        os_ = trade.orderStatus
        self._listener(OrderNotification(
            order_id=order_id,
            state=state,
            filled=_safe_decimal(getattr(os_, "filled", None)),
            avg_fill_price=_safe_decimal(getattr(os_, "avgFillPrice", None)) if state is OrderState.MATCHED else None,
            reason=status if state is OrderState.REJECTED else None,
        ))

    # -- market data / positions ----------------------------------------------

    def _ticker(self, instrument: InstrumentSpec) -> Any:
        ib = self._require_ib()
        contract = self._qualified(instrument)
        ticker = ib.reqMktData(contract, "", True, False)
        deadline = time.monotonic() + self.quote_timeout
        while time.monotonic() < deadline:
            if _safe_decimal(getattr(ticker, "bid", None)) is not None or _safe_decimal(getattr(ticker, "ask", None)) is not None:
                break
            ib.sleep(self.quote_poll_interval)
        return ticker

    def best_bid(self, instrument: InstrumentSpec) -> Decimal | None:
        return _positive(_safe_decimal(getattr(self._ticker(instrument), "bid", None)))

    def best_ask(self, instrument: InstrumentSpec) -> Decimal | None:
        return _positive(_safe_decimal(getattr(self._ticker(instrument), "ask", None)))

    def net_position(self, instrument: InstrumentSpec) -> Decimal:
        ib = self._require_ib()
        spec = validate_instrument(instrument)
        total = Decimal("0")
        for pos in list(ib.positions()):
            contract = getattr(pos, "contract", None)
            if str(getattr(contract, "symbol", "")).upper() != spec.symbol:
                continue
            if spec.kind == "FUT":
                month = str(getattr(contract, "lastTradeDateOrContractMonth", ""))
                if spec.expiry and not month.startswith(spec.expiry[:6]):
                    continue
            total += Decimal(str(getattr(pos, "position", 0)))
        return total

    def latest_bars(self, instruments: Iterable[InstrumentSpec]) -> dict[str, Bar]:
        ib = self._require_ib()
        out: dict[str, Bar] = {}
        for inst in instruments:
            try:
                bars = ib.reqHistoricalData(
                    self._qualified(inst),
                    endDateTime="",
                    durationStr="600 S",
                    barSizeSetting=self.bar_size,
                    whatToShow="TRADES",
                    useRTH=0,
                    formatDate=2,  # Epoch timestamps
                )
            except Exception as exc:
                log.error("Historical bars failed for %s: %s", inst.code, exc)
                continue
            bars = list(bars or [])
            if not bars:
                continue
            b = bars[-1]
            close = _safe_decimal(getattr(b, "close", None))
            if close is None:
                continue
            out[inst.code] = Bar(
                timestamp_epoch_s=_bar_epoch(getattr(b, "date", None)),
                open=_safe_decimal(getattr(b, "open", None)) or close,
                high=_safe_decimal(getattr(b, "high", None)) or close,
                low=_safe_decimal(getattr(b, "low", None)) or close,
                close=close,
                volume=_safe_decimal(getattr(b, "volume", None)),
            )
        return out

    # -- paper trading verification -------------------------------------------

    def _assert_paper_trading(self) -> None:
        ib = self._require_ib()
        accounts: list[str] | None = None
        for _ in range(5):
            try:
                accounts = list(ib.managedAccounts())
            except Exception:
                accounts = None
            if accounts:
                break
            ib.sleep(0.1)

        if not accounts:
            raise RuntimeError(
                "Connected to IBKR, but could not read managed accounts. "
                "This is unsafe; refusing to continue."
            )

        non_paper = [a for a in accounts if not str(a).startswith("DU")]
        if non_paper:
            raise RuntimeError(
                "Refusing to run because this does not look like Paper Trading. "
                f"Managed accounts: {accounts}. "
                "Paper accounts usually start with 'DU'."
            )


def _safe_decimal(value: Any) -> Optional[Decimal]:
    """Convert to Decimal, mapping None/NaN/garbage to None."""
    if value is None:
        return None
    try:
        if value != value:  # NaN check
            return None
    except Exception:
        pass
    try:
        return Decimal(str(value))
    except Exception:
        return None


def _positive(value: Decimal | None) -> Decimal | None:
    # IBKR reports -1 when no quote is available.
    return value if value is not None and value > 0 else None


def _bar_epoch(ts: Any) -> float:
    if ts is None:
        return time.time()
    if hasattr(ts, "timestamp"):
        return float(ts.timestamp())
    if isinstance(ts, dt.date):
        return float(dt.datetime.combine(ts, dt.time.min).timestamp())
    try:
        return float(ts)
    except (TypeError, ValueError):
        return time.time()


def _preflight_check_socket(host: str, port: int) -> None:
    """Fast TCP check before connecting."""
    try:
        with socket.create_connection((host, int(port)), timeout=1.5):
            return
    except ConnectionRefusedError as exc:
        raise IBKRConnectionError(
            f"IBKR API port not accepting connections at {host}:{port}. "
            "Start TWS/IB Gateway, enable API access, and confirm the port. "
            "Common ports: TWS paper=7497 live=7496, Gateway paper=4002 live=4001."
        ) from exc
    except socket.timeout as exc:
        raise IBKRConnectionError(
            f"IBKR API port check timed out at {host}:{port}. "
            "Verify host/port and firewall settings."
        ) from exc
    except OSError as exc:
        raise IBKRConnectionError(
            f"IBKR API port check failed for {host}:{port}: {exc}. "
            "Verify host/port and that TWS/IBG is running."
        ) from exc


def _format_ibkr_dt(value: dt.datetime) -> str:
    """Format datetime for IBKR goodTillDate (UTC)."""
    if value.tzinfo is None:
        value = value.astimezone()
    v = value.astimezone(dt.timezone.utc)
    return v.strftime("%Y%m%d-%H:%M:%S")
