"""Storefront booking bridge for a JSON-RPC scheduling provider and a payment provider."""

__version__ = "0.1.0"
