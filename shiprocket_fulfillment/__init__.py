"""Shiprocket shipping fulfillment for the storefront."""

__version__ = "1.0.0"
