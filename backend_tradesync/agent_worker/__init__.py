"""
Agent worker — periodic incremental refresh of every tracked wallet.
"""
