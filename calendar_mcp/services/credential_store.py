"""File-backed storage for the single OAuth credential record."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from calendar_mcp.models.credentials import CredentialRecord

logger = logging.getLogger(__name__)

_FILE_MODE = 0o600


class CredentialParseError(Exception):
    """Raised when the persisted credential file exists but cannot be parsed."""


class CredentialStore:
    """Read and write the credential record as a JSON file readable only by its owner."""

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[CredentialRecord]:
        """Return the stored record, or ``None`` when no file exists."""
        try:
            raw_text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CredentialParseError(f"Could not read {self._path}: {exc}") from exc

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise CredentialParseError(f"Token file {self._path} is not valid JSON.") from exc

        if not isinstance(payload, dict):
            raise CredentialParseError(f"Token file {self._path} must contain a JSON object.")

        try:
            return CredentialRecord.model_validate(payload)
        except ValidationError as exc:
            raise CredentialParseError(f"Token file {self._path} has invalid fields: {exc}") from exc

    def save(self, record: CredentialRecord) -> CredentialRecord:
        """Replace the stored record, carrying a stored refresh token forward if needed."""
        with self._lock:
            if not record.refresh_token:
                current = self._load_for_update()
                if current is not None and current.refresh_token:
                    record = record.merged_with({"refresh_token": current.refresh_token})
            self._write(record.to_payload())
        return record

    def merge_and_save(
        self, partial: Union[CredentialRecord, Mapping[str, Any]]
    ) -> CredentialRecord:
        """Overlay ``partial`` on the stored record and persist the result."""
        with self._lock:
            current = self._load_for_update()
            if current is None:
                merged = (
                    partial
                    if isinstance(partial, CredentialRecord)
                    else CredentialRecord.model_validate(dict(partial))
                )
            else:
                merged = current.merged_with(partial)
            self._write(merged.to_payload())
        return merged

    def _load_for_update(self) -> Optional[CredentialRecord]:
        try:
            return self.load()
        except CredentialParseError as exc:
            logger.warning("Ignoring unreadable token file during update: %s", exc)
            return None

    def _write(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.chmod(tmp_name, _FILE_MODE)
                json.dump(payload, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        os.chmod(self._path, _FILE_MODE)


__all__ = ["CredentialParseError", "CredentialStore"]
