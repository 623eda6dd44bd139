"""
Backend TradeSync — wallet transaction discovery and synchronization engine.

Discovers every token account a Solana wallet has ever controlled, collects
their transaction signatures, classifies each transaction into trades and
keeps the persisted trade history incrementally in sync with the ledger.
"""

__version__ = "0.1.0"
