"""futures-bot: position exit lifecycle of a single-exchange futures trading bot."""

__version__ = "0.1.0"
