import logging
import os
import tempfile
import unittest
from datetime import datetime, timezone


class TestLoggingSetup(unittest.TestCase):
    def tearDown(self) -> None:
        for h in list(logging.getLogger().handlers):
            logging.getLogger().removeHandler(h)
            h.close()

    def test_configure_logging_file_only_no_console(self) -> None:
        from close_rts.logging_setup import configure_logging

        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "logs", "close_rts.log")
            configure_logging(level=logging.INFO, log_file=path, console=False)
            root = logging.getLogger()

            # No console StreamHandler writing to stdout/stderr.
            console_handlers = [
                h
                for h in root.handlers
                if isinstance(h, logging.StreamHandler)
                and not isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(console_handlers, [])
            self.assertTrue(any(isinstance(h, logging.FileHandler) for h in root.handlers))
            self.assertTrue(os.path.isdir(os.path.join(td, "logs")))
            for h in list(root.handlers):
                root.removeHandler(h)
                h.close()

    def test_level_names_and_ib_insync_floor(self) -> None:
        from close_rts.logging_setup import configure_logging

        configure_logging(level="debug", console=True)
        self.assertEqual(logging.getLogger().level, logging.DEBUG)
        self.assertEqual(logging.getLogger("ib_insync").level, logging.WARNING)

        with self.assertRaises(ValueError):
            configure_logging(level="chatty")

    def test_market_time_stamps(self) -> None:
        from close_rts.logging_setup import MarketTimeFormatter, configure_logging

        created = datetime(2025, 3, 3, 20, 45, tzinfo=timezone.utc).timestamp()
        record = logging.makeLogRecord({"created": created, "msecs": 0.0, "msg": "entry gate"})
        fmt = MarketTimeFormatter("%(asctime)s %(message)s", "Europe/Moscow")
        self.assertEqual(fmt.format(record), "2025-03-03 23:45:00.000+03:00 entry gate")
        self.assertEqual(fmt.formatTime(record, "%H:%M"), "23:45")

        configure_logging(level="info", console=True, market_tz="Europe/Moscow")
        self.assertTrue(all(isinstance(h.formatter, MarketTimeFormatter) for h in logging.getLogger().handlers))
