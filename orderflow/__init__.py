"""
Order & Refund Processing Engine

Queued order fulfilment and refund settlement with an incrementally
maintained aggregate metrics ledger.
"""

__version__ = "1.0.0"
