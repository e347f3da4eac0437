"""Operator identity and the admin capability check.

Every core operation asks an *identity provider* -- any zero-argument
callable returning an :class:`Actor` -- exactly once, and treats a
non-admin actor as "no data / not authorized" rather than raising.
Tests substitute a provider returning a fixed actor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .config import AccessSettings, OperatorSettings, normalize_allow_list, normalize_roles

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The operator behind the current request."""

    authenticated: bool = False
    is_admin: bool = False
    email: str = ""
    role: str = ""
    user_id: str = ""

    @property
    def identity(self) -> str:
        """Value recorded as ``sender_identity`` in the send log."""
        return self.user_id or self.email or "unknown"


ANONYMOUS = Actor()

IdentityProvider = Callable[[], Actor]


class AccessPolicy:
    """Grants admin capability by allow-listed email or by assigned role.

    Roles come from the ``access.roles`` mapping the deployer maintains;
    an operator can never name their own role.
    """

    def __init__(
        self,
        admin_emails: list[str] | str | None = None,
        admin_role: str = "admin",
        roles: dict[str, str] | None = None,
    ):
        self.admin_emails = set(normalize_allow_list(admin_emails))
        self.admin_role = (admin_role or "").strip().lower()
        self.roles = normalize_roles(roles)

    @classmethod
    def from_settings(cls, settings: AccessSettings) -> AccessPolicy:
        return cls(settings.admin_emails, settings.admin_role, settings.roles)

    def is_admin_email(self, email: str | None) -> bool:
        if not email:
            return False
        return email.strip().lower() in self.admin_emails

    def role_for(self, email: str | None) -> str:
        return self.roles.get((email or "").strip().lower(), "")

    def is_admin_role(self, role: str | None) -> bool:
        return bool(self.admin_role) and (role or "").strip().lower() == self.admin_role

    def has_admin_access(self, email: str | None) -> bool:
        return self.is_admin_email(email) or self.is_admin_role(self.role_for(email))

    def actor_for(self, email: str | None, user_id: str = "") -> Actor:
        """Build an authenticated Actor, or ANONYMOUS when no email is known."""
        email = (email or "").strip().lower()
        if not email:
            return ANONYMOUS
        return Actor(
            authenticated=True,
            is_admin=self.has_admin_access(email),
            email=email,
            role=self.role_for(email),
            user_id=(user_id or "").strip(),
        )


class StaticIdentity:
    """Identity provider for a single operator fixed at startup.

    Console and CLI both build one from the ``operator`` config section
    (``BILLMAIL_OPERATOR_EMAIL``).  The console can only drop it again
    with ``sign_out``; there is no way to switch to another identity
    from the page.
    """

    def __init__(self, policy: AccessPolicy, email: str = "", user_id: str = ""):
        self.policy = policy
        self._actor = policy.actor_for(email, user_id)

    @classmethod
    def from_settings(cls, policy: AccessPolicy, settings: OperatorSettings) -> StaticIdentity:
        identity = cls(policy, settings.email, settings.user_id)
        actor = identity()
        logger.info(
            "Operator: %s (admin=%s)",
            actor.email or "(anonymous)", actor.is_admin,
        )
        return identity

    def sign_out(self) -> None:
        self._actor = ANONYMOUS

    def __call__(self) -> Actor:
        return self._actor
