"""Upload credentials — handed explicitly to the upload worker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

# Treat tokens this close to expiry as already expired.
EXPIRY_LEEWAY = timedelta(seconds=30)


@dataclass(frozen=True)
class Credentials:
    user_id: str
    id_token: str
    expires_at: datetime | None = None

    def expiry(self) -> datetime | None:
        """Explicit expiry, else the token's unverified ``exp`` claim."""
        if self.expires_at is not None:
            return self.expires_at
        try:
            claims = jwt.get_unverified_claims(self.id_token)
        except JWTError:
            return None
        exp = claims.get("exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)

    def is_expired(self, now: datetime) -> bool:
        expiry = self.expiry()
        return expiry is not None and now + EXPIRY_LEEWAY >= expiry


class CredentialsHolder:
    """Current sign-in state of the process; updated on sign-in/out."""

    def __init__(self, credentials: Credentials | None = None):
        self._credentials = credentials

    def get(self) -> Credentials | None:
        return self._credentials

    def set(self, credentials: Credentials) -> None:
        self._credentials = credentials
        logger.info("Credentials updated for %s", credentials.user_id)

    def clear(self) -> None:
        self._credentials = None
        logger.info("Credentials cleared")
