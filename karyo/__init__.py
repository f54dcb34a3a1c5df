"""Karyo: an interactive coding assistant with context-managed tool loops."""

__version__ = "0.1.0"
