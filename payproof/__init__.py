"""
PayProof: payment-receipt verification engine.

Decides whether a receipt image corroborates an expected transaction
(amount, date, destination) and explains why.
"""

__version__ = "0.1.0"
