"""
Test that tradesync_logging can be imported without circular import and logger works.
"""

from __future__ import annotations


def test_logging_import():
    """Import get_logger from tradesync_logging and use the logger."""
    from backend_tradesync.tradesync_logging import get_logger

    logger = get_logger("test")
    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "warning")
    assert hasattr(logger, "error")
    logger.info("test_message", key="value")


def test_bind_wallet_and_short():
    from backend_tradesync.tradesync_logging import bind_wallet, short

    log = bind_wallet("wallet-1")
    log.info("bound_message")
    assert short("9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka") == "9QCfNuQu..."
    assert short("abc") == "abc"
    assert short(None) == "?"
