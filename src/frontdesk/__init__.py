"""Frontdesk: conversational assistant backend with human handoff."""

__version__ = "0.1.0"
