"""Telegram bridge for Taiga: story commands and change notifications."""

__version__ = "0.1.0"
