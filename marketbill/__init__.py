"""Seller subscription and billing lifecycle engine."""

__version__ = "0.1.0"
