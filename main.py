"""
Main entrypoint: FastAPI server (optionally with the refresh worker as a task).

Env: SOLANA_RPC_URL, TRADESYNC_DB_URL / DATABASE_URL, API_HOST, API_PORT,
TRADESYNC_RUN_REFRESH_WORKER=1 to refresh tracked wallets periodically.

API only: uvicorn backend_tradesync.api_server.server:app --host 0.0.0.0 --port 8000
Worker only: python -m backend_tradesync.agent_worker.runtime
"""

import os

from backend_tradesync.tradesync_logging import get_logger

logger = get_logger("main")


def main() -> None:
    import uvicorn

    api_host = os.getenv("API_HOST", "0.0.0.0").strip()
    api_port = int(os.getenv("API_PORT", "8000").strip() or "8000")
    logger.info("main_starting", api_host=api_host, api_port=api_port)
    uvicorn.run(
        "backend_tradesync.api_server.server:app",
        host=api_host,
        port=api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
