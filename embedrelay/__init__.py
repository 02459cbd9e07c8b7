"""Embed page resolution and browser-session HLS relay."""

__version__ = "0.1.0"
