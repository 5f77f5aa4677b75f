from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal


InstrumentKind = Literal["STK", "FUT", "FX"]


_FUT_EXPIRY_RE = re.compile(r"^\d{6}(\d{2})?$")  # YYYYMM or YYYYMMDD
_FX_PAIR_RE = re.compile(r"^[A-Z]{6}$")  # e.g. EURUSD


@dataclass(frozen=True)
class InstrumentSpec:
    """
    Canonical instrument description used throughout the system.

    - FUT: symbol=RTS exchange=MOEX expiry=202512 tick_size=10
    - STK: symbol=IBM exchange=SMART currency=USD tick_size=0.01
    - FX:  symbol=EURUSD exchange=IDEALPRO

    `code` (the upper-cased symbol) keys volumes, prices and active trades.
    """

    kind: InstrumentKind
    symbol: str
    exchange: str | None = None
    currency: str | None = None
    expiry: str | None = None
    tick_size: Decimal = Decimal("0.01")

    @property
    def code(self) -> str:
        return self.symbol.upper()

    def normalized(self) -> "InstrumentSpec":
        kind = self.kind.upper()
        symbol = self.symbol.upper()
        exchange = (self.exchange or "").upper() or None
        currency = (self.currency or "").upper() or None
        tick_size = Decimal(str(self.tick_size))
        return InstrumentSpec(
            kind=kind,
            symbol=symbol,
            exchange=exchange,
            currency=currency,
            expiry=self.expiry,
            tick_size=tick_size,
        )

    def shrink_price(self, price: Decimal | float | int) -> Decimal:
        return shrink_price(price, self.tick_size)


def shrink_price(price: Decimal | float | int, tick_size: Decimal) -> Decimal:
    """Round `price` to the nearest multiple of `tick_size` (half away from zero)."""
    tick = Decimal(str(tick_size))
    if tick <= 0:
        raise ValueError("tick_size must be positive")
    value = Decimal(str(price))
    steps = (value / tick).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return (steps * tick).quantize(tick)


def validate_instrument(spec: InstrumentSpec) -> InstrumentSpec:
    spec = spec.normalized()

    if spec.kind not in {"STK", "FUT", "FX"}:
        raise ValueError(f"Unsupported instrument kind: {spec.kind}")
    if not spec.symbol:
        raise ValueError("Instrument symbol is required")
    if spec.tick_size <= 0:
        raise ValueError(f"tick_size must be positive for {spec.symbol}")

    if spec.kind == "STK":
        exchange = spec.exchange or "SMART"
        currency = spec.currency or "USD"
        return InstrumentSpec(kind="STK", symbol=spec.symbol, exchange=exchange, currency=currency, tick_size=spec.tick_size)

    if spec.kind == "FUT":
        if not spec.exchange:
            raise ValueError("FUT exchange is required (e.g. MOEX, CME)")
        if not spec.expiry or not _FUT_EXPIRY_RE.match(spec.expiry):
            raise ValueError("FUT expiry must be YYYYMM or YYYYMMDD (e.g. 202512 or 20251218)")
        currency = spec.currency or "USD"
        return InstrumentSpec(
            kind="FUT",
            symbol=spec.symbol,
            exchange=spec.exchange,
            currency=currency,
            expiry=spec.expiry,
            tick_size=spec.tick_size,
        )

    # FX
    exchange = spec.exchange or "IDEALPRO"
    if not _FX_PAIR_RE.match(spec.symbol):
        raise ValueError("FX symbol must be a 6-letter pair like EURUSD")
    return InstrumentSpec(kind="FX", symbol=spec.symbol, exchange=exchange, tick_size=spec.tick_size)


def parse_instrument(text: str) -> InstrumentSpec:
    """
    Parse `KIND:SYMBOL[:EXCHANGE[:EXPIRY]]`, e.g. `FUT:RTS:MOEX:202512` or `STK:AAPL`.
    Tick sizes are configured separately.
    """
    parts = [p.strip() for p in str(text).split(":")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Instrument must look like KIND:SYMBOL[:EXCHANGE[:EXPIRY]], got {text!r}")
    kind = parts[0].upper()
    symbol = parts[1]
    exchange = parts[2] if len(parts) > 2 and parts[2] else None
    expiry = parts[3] if len(parts) > 3 and parts[3] else None
    return InstrumentSpec(kind=kind, symbol=symbol, exchange=exchange, expiry=expiry)  # type: ignore[arg-type]
