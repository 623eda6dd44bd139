"""
Transaction classifier: one transaction body to zero or more Trades.

Responsibilities:
- Reject failed transactions.
- Report every token account the wallet owns in the transaction (closed
  accounts included) so discovery can scan them.
- Compute per-(account, mint) balance changes, drop dust, wrapped SOL and
  system-owned entries, aggregate per mint.
- Derive direction from the wallet's native movement net of fees and value
  the trade at the native unit price of the transaction's timestamp.
- Degrade to placeholder metadata/price when lookups fail; never drop a trade
  for valuation reasons.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from backend_tradesync.core.exceptions import MalformedDataError, ValuationUnavailableError
from backend_tradesync.ledger.models import (
    LAMPORTS_PER_SOL,
    SYSTEM_PROGRAM_ID,
    WRAPPED_SOL_MINT,
    DiscoveredAccount,
    TokenBalance,
    TransactionBody,
)
from backend_tradesync.pricing.gateway import AssetInfo, PriceGateway, placeholder_asset
from backend_tradesync.sync.models import Trade, TradeDirection
from backend_tradesync.tradesync_logging import get_logger, short

logger = get_logger(__name__)

REASON_FAILED = "failed"
REASON_NO_ASSET_CHANGE = "no_asset_change"
REASON_NO_NATIVE_MOVEMENT = "no_native_movement"


def native_movement_sol(tx: TransactionBody, wallet: str) -> float:
    """
    Wallet's native balance change in SOL, net of the fee when the wallet paid it.

    Zero when the wallet is not among the account keys; another signer's
    rent or fee is never attributed to the wallet.
    """
    idx = tx.account_index_of(wallet)
    if idx is None:
        return 0.0
    lamports = tx.native_delta_lamports(idx)
    if lamports is None:
        return 0.0
    if tx.fee_payer == wallet:
        lamports += tx.fee
    return lamports / LAMPORTS_PER_SOL


@dataclass
class AssetChange:
    mint: str
    delta: float
    owner: str | None
    account: str | None


@dataclass
class ClassificationResult:
    trades: list[Trade] = field(default_factory=list)
    discovered_accounts: list[DiscoveredAccount] = field(default_factory=list)
    reason: str | None = None


class TransactionClassifier:
    def __init__(
        self,
        prices: PriceGateway,
        *,
        dust_threshold: float = 0.001,
        min_native_movement: float = 0.0001,
        emit_multi_asset_trades: bool = True,
    ) -> None:
        self._prices = prices
        self._dust = dust_threshold
        self._min_native = min_native_movement
        self._multi = emit_multi_asset_trades

    # -------------------------------------------------------------------------
    # Structural steps
    # -------------------------------------------------------------------------

    def discover_accounts(self, tx: TransactionBody, wallet: str) -> list[DiscoveredAccount]:
        """Token accounts in tx whose owner is the wallet, one per address."""
        seen: dict[str, DiscoveredAccount] = {}
        for bal in tx.token_balances():
            if bal.owner != wallet:
                continue
            address = tx.key_at(bal.account_index)
            if not address or address == wallet or address in seen:
                continue
            seen[address] = DiscoveredAccount(
                address=address, mint=bal.mint, owner=wallet, source="historical"
            )
        return list(seen.values())

    def account_changes(self, tx: TransactionBody) -> list[AssetChange]:
        """Signed change per (account index, mint), with dust, wrapped SOL and system-owned entries removed."""
        pre: dict[tuple[int, str], TokenBalance] = {
            (b.account_index, b.mint): b for b in tx.pre_token_balances
        }
        post: dict[tuple[int, str], TokenBalance] = {
            (b.account_index, b.mint): b for b in tx.post_token_balances
        }
        changes: list[AssetChange] = []
        for key in sorted(set(pre) | set(post)):
            before, after = pre.get(key), post.get(key)
            ref = after or before
            mint = key[1]
            if mint == WRAPPED_SOL_MINT or ref.owner == SYSTEM_PROGRAM_ID:
                continue
            delta = (after.ui_amount if after else 0.0) - (before.ui_amount if before else 0.0)
            if abs(delta) < self._dust:
                continue
            changes.append(
                AssetChange(mint=mint, delta=delta, owner=ref.owner, account=tx.key_at(key[0]))
            )
        return changes

    def asset_deltas(self, tx: TransactionBody, wallet: str) -> dict[str, float]:
        """
        Net change per mint attributed to the wallet.

        When any change belongs to a wallet-owned account only those count;
        when no entry carries an owner at all every change counts; otherwise
        the wallet's assets did not move.
        """
        changes = self.account_changes(tx)
        owned = [c for c in changes if c.owner == wallet]
        if owned:
            changes = owned
        elif any(c.owner for c in changes):
            changes = []
        totals: dict[str, float] = defaultdict(float)
        for c in changes:
            totals[c.mint] += c.delta
        return {mint: d for mint, d in totals.items() if abs(d) >= self._dust}

    # -------------------------------------------------------------------------
    # Valuation
    # -------------------------------------------------------------------------

    async def _asset_info(self, mint: str) -> AssetInfo:
        try:
            return await self._prices.get_asset_info(mint)
        except ValuationUnavailableError as e:
            logger.debug("classifier_placeholder_metadata", mint=short(mint), error=str(e))
            return placeholder_asset(mint)

    async def _unit_price(self, mint: str, timestamp: int) -> float | None:
        try:
            return await self._prices.get_unit_price_at_time(mint, timestamp)
        except ValuationUnavailableError as e:
            logger.debug("classifier_placeholder_price", mint=short(mint), error=str(e))
            return None

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    async def classify(
        self,
        tx: TransactionBody,
        wallet: str,
        *,
        fallback_timestamp: int | None = None,
    ) -> ClassificationResult:
        """
        Classify one transaction for wallet.

        Raises MalformedDataError when the transaction has no usable timestamp.
        """
        if tx.failed:
            return ClassificationResult(reason=REASON_FAILED)

        discovered = self.discover_accounts(tx, wallet)
        deltas = self.asset_deltas(tx, wallet)
        if not deltas:
            return ClassificationResult(discovered_accounts=discovered, reason=REASON_NO_ASSET_CHANGE)

        native = native_movement_sol(tx, wallet)
        if abs(native) < self._min_native:
            return ClassificationResult(
                discovered_accounts=discovered, reason=REASON_NO_NATIVE_MOVEMENT
            )

        timestamp = tx.block_time if tx.block_time is not None else fallback_timestamp
        if timestamp is None:
            raise MalformedDataError(f"transaction {tx.signature} has no block time")

        primary_mint = max(deltas, key=lambda m: (abs(deltas[m]), m))
        primary_amount = deltas[primary_mint]
        direction = TradeDirection.BUY if native < 0 else TradeDirection.SELL

        sol_price = await self._unit_price(WRAPPED_SOL_MINT, timestamp)
        info = await self._asset_info(primary_mint)
        value_usd = abs(native) * sol_price if sol_price is not None else 0.0
        unit_price = value_usd / abs(primary_amount) if primary_amount else 0.0

        trades = [
            Trade(
                signature=tx.signature,
                timestamp=timestamp,
                direction=direction,
                asset_address=primary_mint,
                asset_symbol=info.symbol,
                asset_logo=info.logo_uri,
                amount=primary_amount,
                native_amount=abs(native),
                unit_price_usd=unit_price,
                value_usd=value_usd,
                fee=tx.fee / LAMPORTS_PER_SOL,
                slot=tx.slot,
                is_placeholder_valuation=sol_price is None,
            )
        ]

        if self._multi and len(deltas) > 1:
            for mint in sorted(deltas):
                if mint == primary_mint:
                    continue
                amount = deltas[mint]
                other_info = await self._asset_info(mint)
                price = await self._unit_price(mint, timestamp)
                trades.append(
                    Trade(
                        signature=tx.signature,
                        timestamp=timestamp,
                        direction=TradeDirection.BUY if amount > 0 else TradeDirection.SELL,
                        asset_address=mint,
                        asset_symbol=other_info.symbol,
                        asset_logo=other_info.logo_uri,
                        amount=amount,
                        native_amount=0.0,
                        unit_price_usd=price or 0.0,
                        value_usd=abs(amount) * price if price is not None else 0.0,
                        fee=0.0,
                        slot=tx.slot,
                        is_placeholder_valuation=price is None,
                    )
                )

        logger.debug(
            "transaction_classified",
            signature=short(tx.signature),
            trades=len(trades),
            direction=direction.value,
            primary=short(primary_mint),
            native=round(native, 9),
        )
        return ClassificationResult(trades=trades, discovered_accounts=discovered)
