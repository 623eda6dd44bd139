"""
Data models for ledger RPC output.

Responsibilities:
- Normalized signature entries from getSignaturesForAddress.
- Normalized transaction bodies (keys, native and token balances, fee, status)
  from getTransaction, independent of the encoding that was requested.
- Explicit result variants for a single RPC exchange.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from solders.pubkey import Pubkey

from backend_tradesync.core.exceptions import InvalidWalletError

LAMPORTS_PER_SOL = 1_000_000_000
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


@dataclass(frozen=True)
class SignatureInfo:
    """
    Normalized transaction signature info from getSignaturesForAddress.

    Transient unit of work for the collector; deduplicated per scan by signature.
    """

    signature: str
    slot: int
    err: Any  # None if success; dict/object from RPC if failed
    block_time: int | None  # Unix timestamp; None if not available
    memo: str | None = None
    confirmation_status: str | None = None

    @classmethod
    def from_rpc_item(cls, item: dict[str, Any]) -> "SignatureInfo":
        """Build from a single getSignaturesForAddress result item."""
        return cls(
            signature=item["signature"],
            slot=int(item["slot"]),
            err=item.get("err"),
            block_time=item.get("blockTime"),
            memo=item.get("memo"),
            confirmation_status=item.get("confirmationStatus"),
        )


@dataclass(frozen=True)
class DiscoveredAccount:
    """Ledger address believed owned by (or historically tied to) the wallet, tagged with its mint."""

    address: str
    mint: str | None = None
    owner: str | None = None
    source: str = "live"  # live | historical | root


@dataclass(frozen=True)
class TokenBalance:
    """One pre/post token balance entry of a transaction."""

    account_index: int
    mint: str
    owner: str | None
    program_id: str | None
    ui_amount: float
    decimals: int


@dataclass
class TransactionBody:
    """Encoding-independent view of a getTransaction result."""

    signature: str
    slot: int
    block_time: int | None
    failed: bool
    fee: int  # lamports
    account_keys: list[str]
    pre_balances: list[int] = field(default_factory=list)
    post_balances: list[int] = field(default_factory=list)
    pre_token_balances: list[TokenBalance] = field(default_factory=list)
    post_token_balances: list[TokenBalance] = field(default_factory=list)

    @property
    def fee_payer(self) -> str | None:
        return self.account_keys[0] if self.account_keys else None

    def account_index_of(self, address: str) -> int | None:
        try:
            return self.account_keys.index(address)
        except ValueError:
            return None

    def key_at(self, index: int) -> str | None:
        if 0 <= index < len(self.account_keys):
            return self.account_keys[index]
        return None

    def token_balances(self) -> list[TokenBalance]:
        return list(self.pre_token_balances) + list(self.post_token_balances)

    def mints(self) -> set[str]:
        return {b.mint for b in self.token_balances() if b.mint}

    def native_delta_lamports(self, index: int) -> int | None:
        """post - pre for the account at index; None when balances are missing."""
        if not (0 <= index < len(self.pre_balances) and index < len(self.post_balances)):
            return None
        return int(self.post_balances[index]) - int(self.pre_balances[index])


@dataclass(frozen=True)
class RpcOk:
    """Successful RPC exchange with a non-null result."""

    value: Any


@dataclass(frozen=True)
class RpcEmpty:
    """Successful RPC exchange whose result was null (e.g. unknown transaction)."""


@dataclass(frozen=True)
class RpcFailure:
    """Failed RPC exchange: transport error, HTTP error or JSON-RPC error object."""

    message: str
    retryable: bool
    status_code: int | None = None
    rpc_code: int | None = None


RpcResult = Union[RpcOk, RpcEmpty, RpcFailure]


def validate_address(address: str) -> str:
    """Return the stripped base58 address; raise InvalidWalletError if it is not a valid public key."""
    address = (address or "").strip()
    if not address:
        raise InvalidWalletError("wallet address must be non-empty")
    try:
        Pubkey.from_string(address)
    except Exception as e:
        raise InvalidWalletError(f"Invalid Solana wallet: {e}") from e
    return address
