"""
KodBank Ledger Core

Fund-transfer and ledger subsystem for the KodBank demo bank: account store,
append-only transaction ledger, atomic transfer engine and read-only queries.
Money is conserved across concurrent transfers.
"""

__version__ = "1.0.0"
