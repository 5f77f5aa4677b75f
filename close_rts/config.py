from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation

from close_rts.instruments import InstrumentSpec, parse_instrument, validate_instrument


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_env_decimal(name: str, default: str) -> Decimal:
    value = _get_env(name, default)
    try:
        return Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be a decimal number, got {value!r}") from exc


def _get_env_list(name: str) -> list[str]:
    value = os.getenv(name) or ""
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_env_decimal_map(name: str) -> dict[str, Decimal]:
    """Parse `CODE=VALUE,CODE=VALUE` into a mapping keyed by upper-cased code."""
    out: dict[str, Decimal] = {}
    for item in _get_env_list(name):
        if "=" not in item:
            raise ValueError(f"{name} entries must look like CODE=VALUE, got {item!r}")
        code, raw = item.split("=", 1)
        try:
            out[code.strip().upper()] = Decimal(raw.strip())
        except InvalidOperation as exc:
            raise ValueError(f"{name}: value for {code.strip()} is not a number: {raw!r}") from exc
    return out


@dataclass(frozen=True)
class IBKRConfig:
    host: str = "127.0.0.1"
    port: int = 7497
    client_id: int = 7


@dataclass(frozen=True)
class TradingConfig:
    broker: str = "ibkr"  # "ibkr" | "sim"
    live_enabled: bool = False
    require_paper: bool = True  # forced-on safety rail
    dry_run: bool = True
    order_token: str | None = None
    confirm_token_required: bool = True
    db_path: str | None = None
    log_file: str | None = None
    ibkr: IBKRConfig = IBKRConfig()

    @staticmethod
    def from_env() -> "TradingConfig":
        ibkr = IBKRConfig(
            host=_get_env("IBKR_HOST", "127.0.0.1"),
            port=_get_env_int("IBKR_PORT", 7497),
            client_id=_get_env_int("IBKR_CLIENT_ID", 7),
        )
        return TradingConfig(
            broker=_get_env("TRADING_BROKER", "ibkr"),
            live_enabled=_get_env_bool("TRADING_LIVE_ENABLED", False),
            # Intentionally forced on: paper-only guard should not be disabled by env.
            require_paper=True,
            dry_run=_get_env_bool("TRADING_DRY_RUN", True),
            order_token=(_get_env("TRADING_ORDER_TOKEN", "").strip() or None),
            confirm_token_required=_get_env_bool("TRADING_CONFIRM_TOKEN_REQUIRED", True),
            db_path=(_get_env("TRADING_DB_PATH", "").strip() or None),
            log_file=(_get_env("TRADING_LOG_FILE", "").strip() or None),
            ibkr=ibkr,
        )


@dataclass(frozen=True)
class StrategyConfig:
    """
    Startup parameters of the CloseRts rule.

    Every instrument needs an entry in `volumes`; tick sizes are folded into the
    instrument specs by `from_env`.
    """

    instruments: tuple[InstrumentSpec, ...] = ()
    volumes: dict[str, Decimal] = field(default_factory=dict)
    stop_loss_percent: Decimal = Decimal("1")
    take_profit_percent: Decimal = Decimal("2")
    day_rate: Decimal = Decimal("0")
    evening_rate: Decimal = Decimal("0")
    load_active_trades: bool = False
    timeframe_seconds: int = 60
    work_contour: bool = True
    market_tz: str = "Europe/Moscow"

    def __post_init__(self) -> None:
        if self.timeframe_seconds <= 0:
            raise ValueError("timeframe_seconds must be positive")
        if self.day_rate < 0 or self.evening_rate < 0:
            raise ValueError("day_rate and evening_rate must not be negative")
        for inst in self.instruments:
            volume = self.volumes.get(inst.code)
            if volume is None:
                raise ValueError(f"No volume configured for {inst.code}")
            if volume <= 0:
                raise ValueError(f"Volume for {inst.code} must be positive")

    def volume_for(self, code: str) -> Decimal:
        return self.volumes[code]

    @staticmethod
    def from_env() -> "StrategyConfig":
        tick_sizes = _get_env_decimal_map("CLOSE_RTS_TICK_SIZES")
        instruments: list[InstrumentSpec] = []
        for raw in _get_env_list("CLOSE_RTS_INSTRUMENTS"):
            spec = parse_instrument(raw)
            tick = tick_sizes.get(spec.code)
            if tick is not None:
                spec = replace(spec, tick_size=tick)
            instruments.append(validate_instrument(spec))
        return StrategyConfig(
            instruments=tuple(instruments),
            volumes=_get_env_decimal_map("CLOSE_RTS_VOLUMES"),
            stop_loss_percent=_get_env_decimal("CLOSE_RTS_STOP_LOSS_PERCENT", "1"),
            take_profit_percent=_get_env_decimal("CLOSE_RTS_TAKE_PROFIT_PERCENT", "2"),
            day_rate=_get_env_decimal("CLOSE_RTS_DAY_RATE", "0"),
            evening_rate=_get_env_decimal("CLOSE_RTS_EVENING_RATE", "0"),
            load_active_trades=_get_env_bool("CLOSE_RTS_LOAD_ACTIVE_TRADES", False),
            timeframe_seconds=_get_env_int("CLOSE_RTS_TIMEFRAME_SECONDS", 60),
            work_contour=_get_env_bool("CLOSE_RTS_WORK_CONTOUR", True),
            market_tz=_get_env("CLOSE_RTS_MARKET_TZ", "Europe/Moscow"),
        )
