"""
Wallet sync pipeline: discovery, signature collection, classification and
the orchestrator that drives historical and incremental scans.
"""
