from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from zoneinfo import ZoneInfo


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


class MarketTimeFormatter(logging.Formatter):
    """Stamps records in the market time zone so gate minutes read as exchange time."""

    def __init__(self, fmt: str, market_tz: str) -> None:
        super().__init__(fmt)
        self._tz = ZoneInfo(market_tz)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created, self._tz)
        if datefmt:
            return stamp.strftime(datefmt)
        return stamp.isoformat(sep=" ", timespec="milliseconds")


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
    market_tz: str | None = None,
) -> None:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(stream=sys.stderr))

    if log_file:
        log_file = str(log_file)
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    if not handlers:
        # Never leave logging unconfigured.
        handlers.append(logging.NullHandler())

    if market_tz:
        formatter = MarketTimeFormatter(LOG_FORMAT, market_tz)
        for h in handlers:
            h.setFormatter(formatter)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # ib_insync logs every wrapper message at INFO.
    logging.getLogger("ib_insync").setLevel(max(int(level), logging.WARNING))
