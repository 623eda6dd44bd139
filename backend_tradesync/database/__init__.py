"""
Persistence gateway: SQLAlchemy-backed trade cache and wallet sync state.

Use get_store() for the process-wide TradeStore (DATABASE_URL / TRADESYNC_DB_URL
for PostgreSQL, otherwise SQLite).
"""

from backend_tradesync.database.store import TradeStore, get_store, reset_store_for_test

__all__ = ["TradeStore", "get_store", "reset_store_for_test"]
