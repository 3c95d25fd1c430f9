"""Jot - Telegram forum bridge for remote coding-assistant sessions."""

__version__ = "0.1.0"
