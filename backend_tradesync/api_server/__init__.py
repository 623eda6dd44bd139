"""
API server package — HTTP interface over the sync engine.

Triggers scans/refreshes and exposes sync state and cached trades. Delegates
all work to the SyncOrchestrator and the TradeStore.
"""
