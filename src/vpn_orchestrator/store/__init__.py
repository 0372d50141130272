"""Durable storage for sessions, aggregate state, leases and client configs."""

from vpn_orchestrator.store.db import SqliteSessionStore
from vpn_orchestrator.store.gateway import AsyncSessionStore

__all__ = ["AsyncSessionStore", "SqliteSessionStore"]
