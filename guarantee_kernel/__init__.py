"""
Guarantee Kernel - Pool Guarantee lifecycle coordination.

A role-gated, ledger-reconciled state machine for trade-finance pool
guarantees:
- Nine-stage lifecycle with a declarative transition table
- Centralized role authorization gate
- Fixed-point settlement arithmetic
- Financier voting with quorum
- Single-writer reconciliation of ledger outcomes
"""

__version__ = "0.1.0"
