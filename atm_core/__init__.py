"""
ATM Core Engine

Account authentication and funds movement: salted PIN hashing with a
temporary lockout policy, withdraw/deposit/transfer with rollback on
persistence failure, an append-only transaction ledger and a trend based
balance forecast.
"""

__version__ = "1.0.0"
