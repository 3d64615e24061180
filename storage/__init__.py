"""
Storage Package.

Relational persistence for the trading engine ledger.

Modules:
- models/: ORM models
"""
