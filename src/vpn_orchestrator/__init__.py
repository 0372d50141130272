"""Ephemeral VPN session lifecycle orchestrator."""

__version__ = "0.1.0"
