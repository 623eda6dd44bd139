"""
Run one wallet scan (or refresh) from the command line and print the result.

Usage:
    python -m backend_tradesync.tools.scan_wallet --wallet-id alice --address <base58>
    python -m backend_tradesync.tools.scan_wallet --wallet-id alice --address <base58> --refresh
    python -m backend_tradesync.tools.scan_wallet --wallet-id alice --show-trades 20
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from backend_tradesync.core.exceptions import InvalidWalletError, ScanInProgressError, TradeSyncError
from backend_tradesync.sync.models import ScanProgress
from backend_tradesync.tradesync_logging import get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_BUSY = 3
EXIT_FAILED = 1


def _print_progress(p: ScanProgress) -> None:
    print(
        f"[{p.current_step}] signatures={p.processed_signatures}/{p.total_signatures} "
        f"assets={p.unique_assets} trades={p.trades_found}",
        file=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan a Solana wallet and sync its trade history.")
    parser.add_argument("--wallet-id", required=True, help="Identifier the trades are stored under")
    parser.add_argument("--address", help="Wallet root address (base58)")
    parser.add_argument("--refresh", action="store_true", help="Report as a refresh (new trades only)")
    parser.add_argument("--show-trades", type=int, default=0, metavar="N", help="Print the N newest cached trades")
    parser.add_argument("--quiet", action="store_true", help="No progress output")
    args = parser.parse_args(argv)
    if not args.address and not args.show_trades:
        parser.error("--address is required unless --show-trades is given")
    return args


async def _run(args: argparse.Namespace) -> int:
    from backend_tradesync.api_server.server import build_orchestrator

    orchestrator = build_orchestrator()
    try:
        if args.address:
            progress = None if args.quiet else _print_progress
            try:
                if args.refresh:
                    result = await orchestrator.refresh_wallet(args.wallet_id, args.address, progress=progress)
                    out = {"new_trades_count": result.new_trades_count, "new_watermark": result.new_watermark}
                else:
                    scan = await orchestrator.scan_wallet(args.wallet_id, args.address, progress=progress)
                    out = {
                        "trades_found": scan.trades_found,
                        "new_watermark": scan.new_watermark,
                        "inserted": scan.inserted,
                        "mode": scan.mode,
                    }
            except InvalidWalletError as e:
                print(f"invalid address: {e}", file=sys.stderr)
                return EXIT_INVALID
            except ScanInProgressError as e:
                print(str(e), file=sys.stderr)
                return EXIT_BUSY
            except TradeSyncError as e:
                logger.error("cli_scan_failed", wallet_id=args.wallet_id, error=str(e))
                return EXIT_FAILED
            print(json.dumps(out, indent=2))
        if args.show_trades:
            trades = orchestrator.store.list_trades(args.wallet_id, limit=args.show_trades)
            print(json.dumps([t.to_dict() for t in trades], indent=2))
        return EXIT_OK
    finally:
        await orchestrator.aclose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
