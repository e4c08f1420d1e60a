"""
auth/federation.py -- Federated Identity Linker.

Maps a verified ExternalProfile to a local account. Resolution order:

  1. (provider, subject) already linked         -> that user
  2. else an account with the profile's email   -> attach the identity to it
  3. else                                       -> create an account

New accounts get an unusable random password hash, is_email_verified taken
from the provider, and a username derived from the display name (or the
email local part): lowercased, reduced to [a-z0-9], cut to 20 characters,
then de-duplicated with an incrementing numeric suffix (alice, alice1, ...).

The whole resolution runs in the caller's transaction. The returned
``created`` flag is for onboarding UX only.
"""

from __future__ import annotations

import logging
import re
import uuid

from sqlalchemy.engine import Connection

from auth.errors import IdentityAlreadyLinked
from auth.models import ExternalProfile, User
from auth.store import UserStore
from auth.tokens import unusable_password_hash

logger = logging.getLogger("quicklearn.auth.federation")

_USERNAME_MAX = 20
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def username_base(profile: ExternalProfile) -> str:
    source = profile.display_name or profile.email.split("@", 1)[0] or "user"
    slug = _NON_ALNUM.sub("", source.lower())[:_USERNAME_MAX]
    return slug or "user"


class FederatedIdentityLinker:
    def __init__(self, store: UserStore) -> None:
        self.store = store

    def resolve(self, profile: ExternalProfile, conn: Connection | None = None) -> tuple[User, bool]:
        """Return (user, created) for the profile; see module docstring."""
        with self.store.scope(conn) as c:
            user = self.store.get_by_external(profile.provider, profile.subject, conn=c)
            if user is not None:
                return user, False

            user = self.store.get_by_email(profile.email, conn=c)
            if user is not None:
                if user.external_subject is not None:
                    logger.warning(
                        "Refusing to relink user_id=%s: already linked to another %s identity",
                        user.id,
                        user.external_provider,
                    )
                    raise IdentityAlreadyLinked()
                self.store.link_external_identity(user.id, profile.provider, profile.subject, conn=c)
                if profile.email_verified and not user.is_email_verified:
                    self.store.set_email_verified(user.id, True, conn=c)
                logger.info("Linked %s identity to existing user_id=%s", profile.provider, user.id)
                return self.store.get_by_id(user.id, conn=c), False

            new_user = User(
                uuid=str(uuid.uuid4()),
                username=self._unique_username(username_base(profile), c),
                email=profile.email,
                password_hash=unusable_password_hash(),
                is_email_verified=profile.email_verified,
                external_provider=profile.provider,
                external_subject=profile.subject,
            )
            new_user.id = self.store.create_user(new_user, conn=c)
            logger.info("Created user_id=%s from %s identity", new_user.id, profile.provider)
            return self.store.get_by_id(new_user.id, conn=c), True

    def _unique_username(self, base: str, conn: Connection) -> str:
        candidate = base
        suffix = 0
        while self.store.username_exists(candidate, conn=conn):
            suffix += 1
            candidate = f"{base}{suffix}"
        return candidate
