"""
Solana transaction parser: raw getTransaction payloads to TransactionBody.

Handles both jsonParsed (accountKeys as objects) and json (accountKeys as
strings plus meta.loadedAddresses for versioned transactions). Purely
structural; classification lives in backend_tradesync.sync.classifier.
"""

from __future__ import annotations

from typing import Any

from backend_tradesync.core.exceptions import MalformedDataError
from backend_tradesync.ledger.models import TokenBalance, TransactionBody


def _get_account_keys(
    message: dict[str, Any],
    meta: dict[str, Any] | None = None,
) -> list[str]:
    """
    Resolve accountKeys to a list of base58 strings (handles json vs jsonParsed).
    For versioned transactions in json encoding, appends meta.loadedAddresses
    (writable then readonly).
    """
    keys = message.get("accountKeys") or []
    out: list[str] = []
    parsed_shape = False
    for k in keys:
        if isinstance(k, str):
            out.append(k)
        elif isinstance(k, dict):
            parsed_shape = True
            out.append(str(k.get("pubkey") or ""))
    if parsed_shape:
        # jsonParsed already lists lookup-table addresses inline
        return out
    loaded = (meta or {}).get("loadedAddresses") or {}
    for role in ("writable", "readonly"):
        for addr in loaded.get(role) or []:
            if isinstance(addr, str):
                out.append(addr)
    return out


def _ui_amount(token_amount: dict[str, Any]) -> float:
    """uiAmount may be null for zero balances; fall back to uiAmountString or raw amount."""
    ui = token_amount.get("uiAmount")
    if ui is not None:
        return float(ui)
    ui_str = token_amount.get("uiAmountString")
    if ui_str not in (None, ""):
        return float(ui_str)
    raw = token_amount.get("amount")
    decimals = int(token_amount.get("decimals") or 0)
    if raw in (None, ""):
        return 0.0
    return int(raw) / (10 ** decimals)


def _parse_token_balances(items: list[dict[str, Any]] | None) -> list[TokenBalance]:
    out: list[TokenBalance] = []
    for item in items or []:
        try:
            token_amount = item.get("uiTokenAmount") or {}
            out.append(
                TokenBalance(
                    account_index=int(item["accountIndex"]),
                    mint=str(item["mint"]),
                    owner=item.get("owner"),
                    program_id=item.get("programId"),
                    ui_amount=_ui_amount(token_amount),
                    decimals=int(token_amount.get("decimals") or 0),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedDataError(f"invalid token balance entry: {e}") from e
    return out


def parse_transaction(signature: str, payload: dict[str, Any]) -> TransactionBody:
    """
    Build a TransactionBody from a getTransaction result.

    Raises MalformedDataError when the payload lacks a message or meta, or when
    native balance arrays do not line up with the account keys.
    """
    if not isinstance(payload, dict):
        raise MalformedDataError(f"transaction {signature} payload is not an object")
    meta = payload.get("meta")
    tx = payload.get("transaction")
    if not isinstance(meta, dict) or not isinstance(tx, dict):
        raise MalformedDataError(f"transaction {signature} missing meta or transaction")
    message = tx.get("message")
    if not isinstance(message, dict):
        raise MalformedDataError(f"transaction {signature} missing message")

    keys = _get_account_keys(message, meta)
    if not keys:
        raise MalformedDataError(f"transaction {signature} has no account keys")
    pre = list(meta.get("preBalances") or [])
    post = list(meta.get("postBalances") or [])
    if len(pre) != len(post):
        raise MalformedDataError(
            f"transaction {signature} balance arrays differ ({len(pre)} vs {len(post)})"
        )

    sigs = tx.get("signatures") or []
    try:
        return TransactionBody(
            signature=signature or (sigs[0] if sigs else ""),
            slot=int(payload.get("slot") or 0),
            block_time=payload.get("blockTime"),
            failed=meta.get("err") is not None,
            fee=int(meta.get("fee") or 0),
            account_keys=keys,
            pre_balances=[int(b) for b in pre],
            post_balances=[int(b) for b in post],
            pre_token_balances=_parse_token_balances(meta.get("preTokenBalances")),
            post_token_balances=_parse_token_balances(meta.get("postTokenBalances")),
        )
    except (TypeError, ValueError) as e:
        raise MalformedDataError(f"transaction {signature} malformed: {e}") from e
