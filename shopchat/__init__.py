"""Webhook-driven retail chat assistant for Messenger and LINE."""

__version__ = "0.1.0"
