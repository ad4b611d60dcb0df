"""
Persistence for usage periods, the transaction ledger and alerts.
"""
