"""
Mealbot - Source Package

Tracks shared-meal debts between named accounts: who owes whom, how much,
and when.

DESIGN PRINCIPLES:
1. Receipts are immutable; corrections are new receipts
2. Every backend answers every query identically
3. Nothing acknowledged to a caller is lost on a clean shutdown
4. Storage layer is swappable
"""

__version__ = "1.0.0"
