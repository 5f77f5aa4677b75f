"""CloseRts: a time-gated close/evening gap trading rule with a forced time exit."""

__version__ = "0.1.0"
