"""On-disk storage for generated client configuration files."""

from __future__ import annotations

import shutil
from pathlib import Path

from vpn_orchestrator.errors import ValidationError
from vpn_orchestrator.domain.requests import validate_session_id

CLIENT_CONFIG_FILENAME = "client.conf"
QR_CODE_FILENAME = "client.svg"


class ConfigArtifactStore:
    def __init__(self, base_path: str) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    def _session_dir(self, session_id: str) -> Path:
        return self._base / validate_session_id(session_id)

    def _write(self, session_id: str, filename: str, content: str) -> str:
        directory = self._session_dir(session_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_text(content, encoding="utf-8")
        path.chmod(0o600)
        return str(path)

    def write_client_config(self, session_id: str, content: str) -> str:
        return self._write(session_id, CLIENT_CONFIG_FILENAME, content)

    def write_qr_code(self, session_id: str, svg: str) -> str:
        # Carries the private key, same as the config.
        return self._write(session_id, QR_CODE_FILENAME, svg)

    def read_text(self, location: str) -> str:
        path = Path(location).resolve()
        # Locations come back from the store; refuse anything outside the base.
        if not path.is_relative_to(self._base.resolve()):
            raise ValidationError(f"Path is outside base directory: {location}")
        return path.read_text(encoding="utf-8")

    def delete_client_config(self, session_id: str) -> bool:
        """Remove the session's artifacts. Returns False when nothing existed."""
        directory = self._session_dir(session_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True
