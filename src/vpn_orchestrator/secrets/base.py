"""Secret manager contract."""

from __future__ import annotations

from typing import Protocol


class SecretManager(Protocol):
    async def store_session_secret(self, session_id: str, name: str, value: str) -> str:
        """Store ``value`` tagged with the session and return its identifier."""
        ...

    async def cleanup_session_secrets(self, session_id: str) -> int:
        """Delete every secret tagged with the session. Idempotent."""
        ...
