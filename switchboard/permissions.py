"""Sender permissions for switchboard.

Decides who may talk to the bot at all and who counts as an admin.
Signal identities are either E.164 phone numbers or account UUIDs;
phone numbers are normalized before comparison, UUIDs are compared
case-insensitively.
"""

import re
from typing import Iterable, Optional

import structlog

logger = structlog.get_logger("switchboard.admin")

_UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE,
)


def is_uuid(value: str) -> bool:
    """Check if a string is a Signal UUID."""
    return bool(_UUID_PATTERN.match(value))


def normalize_identity(identity: str) -> str:
    """Normalize a phone number to E.164; lower-case a UUID."""
    identity = identity.strip()
    if is_uuid(identity):
        return identity.lower()
    digits = re.sub(r"[^\d]", "", identity)
    return "+" + digits


def mask(identity: Optional[str]) -> str:
    """Last four characters only, for logs."""
    if not identity:
        return "<none>"
    return "..." + identity[-4:]


class PermissionManager:
    """Admin and allow-list checks.

    Args:
        superuser: Identity that is always an admin.
        admins: Further admin identities.
        allowed_senders: If given, only these senders are served.
    """

    def __init__(
        self,
        superuser: Optional[str] = None,
        admins: Iterable[str] = (),
        allowed_senders: Optional[Iterable[str]] = None,
    ):
        self.superuser = normalize_identity(superuser) if superuser else None
        self._admins = frozenset(
            normalize_identity(a) for a in admins if isinstance(a, str) and a
        )
        self._allowed = (
            None if allowed_senders is None
            else frozenset(normalize_identity(a) for a in allowed_senders if isinstance(a, str) and a)
        )

    @classmethod
    def from_config(cls, config) -> "PermissionManager":
        return cls(
            superuser=config.superuser,
            admins=config.admins,
            allowed_senders=config.allowed_senders,
        )

    def is_superuser(self, sender: Optional[str]) -> bool:
        if not sender or not self.superuser:
            return False
        return normalize_identity(sender) == self.superuser

    def is_admin(self, sender: Optional[str]) -> bool:
        """True for the superuser and any configured admin."""
        if not sender:
            return False
        normalized = normalize_identity(sender)
        return normalized == self.superuser or normalized in self._admins

    def is_allowed(self, sender: Optional[str]) -> bool:
        """True unless an allow-list is configured and the sender is not on it."""
        if self._allowed is None:
            return True
        if not sender:
            return False
        if self.is_admin(sender):
            return True
        allowed = normalize_identity(sender) in self._allowed
        if not allowed:
            logger.warning("sender_not_allowed", sender=mask(sender))
        return allowed
