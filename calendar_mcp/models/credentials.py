"""
Domain model for the persisted OAuth credential.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CredentialRecord(BaseModel):
    """The single token record stored for the authorized Google account.

    Provider-specific fields (``scope``, ``token_type``, ``id_token`` ...) are
    kept as extras so they round-trip through the store unchanged.
    """

    model_config = ConfigDict(extra="allow")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry_date: Optional[int] = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize only the fields that were actually provided."""
        return self.model_dump(exclude_unset=True)

    def is_expired(self, margin_ms: int = 0, now: Optional[int] = None) -> bool:
        if not self.access_token or self.expiry_date is None:
            return True
        current = now_ms() if now is None else now
        return current >= self.expiry_date - margin_ms

    def merged_with(
        self, partial: Union["CredentialRecord", Mapping[str, Any]]
    ) -> "CredentialRecord":
        """Overlay ``partial`` on this record without losing the refresh token."""
        update = partial.to_payload() if isinstance(partial, CredentialRecord) else dict(partial)
        merged = {**self.to_payload(), **update}
        if not update.get("refresh_token") and self.refresh_token:
            merged["refresh_token"] = self.refresh_token
        return CredentialRecord.model_validate(merged)


__all__ = ["CredentialRecord", "now_ms"]
