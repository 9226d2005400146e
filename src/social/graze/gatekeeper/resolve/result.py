"""Identity resolution result types.

A resolution classifies an account name as a centrally verified (premium)
identity, a locally registered (offline) one, or unknown when no provider could
give a definitive answer.
"""

import hashlib
import re
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,16}$")
"""Account names are 3 to 16 ASCII letters, digits or underscores."""


class ResolutionStatus(str, Enum):
    """Outcome classification for a name lookup."""

    PREMIUM = "premium"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ResolutionResult(BaseModel):
    """Immutable result of resolving a single account name.

    `identity_id` and `canonical_name` are only populated for premium results.
    `source` names the provider (or internal component) that produced the result.
    """

    model_config = ConfigDict(frozen=True)

    status: ResolutionStatus
    identity_id: Optional[uuid.UUID] = None
    canonical_name: Optional[str] = None
    source: str
    message: str = ""

    @property
    def is_premium(self) -> bool:
        return self.status == ResolutionStatus.PREMIUM

    @property
    def is_offline(self) -> bool:
        return self.status == ResolutionStatus.OFFLINE

    @property
    def is_unknown(self) -> bool:
        return self.status == ResolutionStatus.UNKNOWN

    @staticmethod
    def premium(
        identity_id: uuid.UUID, canonical_name: str, source: str
    ) -> "ResolutionResult":
        return ResolutionResult(
            status=ResolutionStatus.PREMIUM,
            identity_id=identity_id,
            canonical_name=canonical_name,
            source=source,
            message="ok",
        )

    @staticmethod
    def offline(source: str, message: str) -> "ResolutionResult":
        return ResolutionResult(
            status=ResolutionStatus.OFFLINE, source=source, message=message
        )

    @staticmethod
    def unknown(source: str, message: str) -> "ResolutionResult":
        return ResolutionResult(
            status=ResolutionStatus.UNKNOWN, source=source, message=message
        )


def validate_username(name: Optional[str], source: str) -> Optional[ResolutionResult]:
    """Check a name before any network work is done.

    Returns an OFFLINE result when the name can never be a premium identity, or
    None when the name is well formed.
    """
    if name is None or len(name.strip()) == 0:
        return ResolutionResult.offline(source, "empty username")
    if USERNAME_PATTERN.match(name) is None:
        return ResolutionResult.offline(source, "invalid characters")
    return None


def parse_identity_id(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse a remote identity id in either dashed or flat 32-hex form.

    The nil UUID is rejected. Returns None when the value does not parse.
    """
    if value is None:
        return None
    candidate = value.strip()
    if len(candidate) == 32 and "-" not in candidate:
        candidate = (
            f"{candidate[0:8]}-{candidate[8:12]}-{candidate[12:16]}-"
            f"{candidate[16:20]}-{candidate[20:32]}"
        )
    try:
        parsed = uuid.UUID(candidate)
    except ValueError:
        return None
    if parsed.int == 0:
        return None
    return parsed


def offline_identity_id(name: str) -> uuid.UUID:
    """Derive the deterministic identity id used for offline accounts.

    This is the name-based (version 3, MD5) UUID of ``"OfflinePlayer:" + name``
    computed over the raw bytes with no namespace, matching the id the game
    server assigns to offline players.
    """
    digest = bytearray(hashlib.md5(f"OfflinePlayer:{name}".encode("utf-8")).digest())
    digest[6] = (digest[6] & 0x0F) | 0x30
    digest[8] = (digest[8] & 0x3F) | 0x80
    return uuid.UUID(bytes=bytes(digest))
