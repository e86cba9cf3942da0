"""
Compact signed access tokens for attachments.

Wire format::

    base64url(payload) "." base36(signature)

    payload = "<attachment_id[:8]>:<tenant_id[:8]>:<expires_epoch>:<version>"

The token carries truncated identifiers only. A valid token proves possession
of a capability for *some* attachment matching the prefixes; callers must
resolve the full record and re-check tenant ownership and the attachment's
current token before granting access.
"""

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from src.core.database.base import utcnow

SHORT_ID_LENGTH = 8
DEFAULT_TTL = timedelta(hours=24)

REASON_MALFORMED = "malformed"
REASON_BAD_SIGNATURE = "bad signature"
REASON_EXPIRED = "expired"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def short_id(value: str) -> str:
    """First 8 hex characters of a UUID-like identifier."""
    return value.replace("-", "")[:SHORT_ID_LENGTH].lower()


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def rolling_checksum(data: str) -> int:
    """32-bit rolling checksum (h = h*31 + c with signed wrap), absolute value.

    Not a MAC: anyone who knows the payload format can forge it once the
    secret leaks or is brute-forced. Kept for tokens issued by older clients.
    """
    h = 0
    for ch in data:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


@dataclass(frozen=True)
class TokenValidation:
    """Result of validating a token. Never raised, always returned."""

    valid: bool
    attachment_id: str | None = None
    tenant_id: str | None = None
    expires_at: datetime | None = None
    version: int | None = None
    reason: str | None = None

    @classmethod
    def rejected(cls, reason: str, **kwargs) -> "TokenValidation":
        return cls(valid=False, reason=reason, **kwargs)


class TokenCodec:
    """Issues and verifies compact attachment tokens."""

    def __init__(
        self,
        secret: str,
        scheme: str = "hmac",
        clock: Callable[[], datetime] = utcnow,
    ):
        if not secret:
            raise ValueError("Token secret must not be empty")
        if scheme not in ("hmac", "checksum"):
            raise ValueError(f"Unknown signature scheme: {scheme}")
        self._secret = secret
        self.scheme = scheme
        self.clock = clock

    def _sign(self, payload: str) -> str:
        if self.scheme == "checksum":
            return to_base36(rolling_checksum(payload + self._secret))
        digest = hmac.new(self._secret.encode(), payload.encode(), hashlib.sha256).digest()
        return to_base36(int.from_bytes(digest[:16], "big"))

    def issue(
        self,
        attachment_id: str,
        tenant_id: str,
        ttl: timedelta = DEFAULT_TTL,
        version: int = 1,
    ) -> str:
        """Build a token valid until now + ttl."""
        if ttl.total_seconds() <= 0:
            raise ValueError("ttl must be positive")
        expires = int((self.clock() + ttl).timestamp())
        payload = f"{short_id(attachment_id)}:{short_id(tenant_id)}:{expires}:{version}"
        return f"{b64url_encode(payload.encode())}.{self._sign(payload)}"

    def validate(self, token: str | None) -> TokenValidation:
        if not token or not isinstance(token, str):
            return TokenValidation.rejected(REASON_MALFORMED)
        parts = token.split(".")
        if len(parts) != 2 or not all(parts):
            return TokenValidation.rejected(REASON_MALFORMED)
        encoded, signature = parts
        try:
            payload = b64url_decode(encoded).decode("ascii")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return TokenValidation.rejected(REASON_MALFORMED)

        if not hmac.compare_digest(self._sign(payload), signature):
            return TokenValidation.rejected(REASON_BAD_SIGNATURE)

        fields = payload.split(":")
        if len(fields) != 4:
            return TokenValidation.rejected(REASON_MALFORMED)
        attachment_prefix, tenant_prefix, expires_raw, version_raw = fields
        try:
            expires_epoch = int(expires_raw)
            version = int(version_raw)
        except ValueError:
            return TokenValidation.rejected(REASON_MALFORMED)
        expires_at = datetime.fromtimestamp(expires_epoch, tz=timezone.utc)

        if self.clock() > expires_at:
            return TokenValidation.rejected(
                REASON_EXPIRED,
                attachment_id=attachment_prefix,
                tenant_id=tenant_prefix,
                expires_at=expires_at,
                version=version,
            )
        return TokenValidation(
            valid=True,
            attachment_id=attachment_prefix,
            tenant_id=tenant_prefix,
            expires_at=expires_at,
            version=version,
        )

    def is_expiring_soon(self, token: str, threshold_hours: float = 2) -> bool:
        """True when the token expires within the threshold; invalid tokens count as expiring."""
        result = self.validate(token)
        if not result.valid or result.expires_at is None:
            return True
        return result.expires_at - self.clock() <= timedelta(hours=threshold_hours)
