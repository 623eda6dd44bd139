"""
Ledger access: Solana JSON-RPC client, response models and transaction parsing.
"""
