"""
Field Lending Core

Microloan repayment schedules and offline-first collection recording for
field agents, with Decimal money math and exactly-once reconciliation of
collections captured while disconnected.
"""

__version__ = "1.0.0"
