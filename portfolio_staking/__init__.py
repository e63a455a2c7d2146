"""
Portfolio Staking Core

Portfolio ledger, daily interest accrual and deposit/withdrawal settlement
for a crypto staking platform. All amounts use Decimal precision and every
state change is written to a hash-chained audit trail.
"""

__version__ = "1.0.0"
