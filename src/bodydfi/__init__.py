"""BodyDFi marketplace transaction and token-ledger core."""

__version__ = "0.1.0"
