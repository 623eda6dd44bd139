"""
Structured logging for Backend TradeSync.

Use get_logger() in every module; bind_wallet() for wallet-scoped loggers.
"""

from backend_tradesync.tradesync_logging.logger import bind_wallet, get_logger, short

__all__ = ["bind_wallet", "get_logger", "short"]
