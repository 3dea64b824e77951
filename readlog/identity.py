"""Resolve the caller's identity to a local user.

Authentication itself happens upstream at the identity provider, which
forwards the authenticated subject and email as request headers. A user may
be linked by our own id (from signed billing metadata only), by the
provider's id, or only by email, so the resolvers are tried in that order and
the first match wins.
"""
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from readlog.db import get_db
from readlog.errors import Unauthorized, UserNotFound
from readlog.models import User
from readlog.repository import get_user_by_id, get_user_by_auth_provider_id, get_user_by_email


# Largest value a signed 64-bit INTEGER primary key can hold.
MAX_USER_ID = 2 ** 63 - 1


def parse_user_id(value) -> Optional[int]:
    """Local user id from trusted metadata, or None if it cannot be one."""
    text = str(value).strip() if value is not None else ""
    if not text.isdigit():
        return None
    user_id = int(text)
    return user_id if 0 < user_id <= MAX_USER_ID else None


@dataclass(frozen=True)
class Identity:
    """Who is calling.

    ``subject`` and ``email`` come from the identity provider; ``subject`` is
    always the provider's id, even when it happens to be numeric. ``user_id``
    is our own primary key and is only set from sources we sign ourselves,
    such as Stripe checkout metadata, never from request headers.
    """
    subject: Optional[str] = None
    email: Optional[str] = None
    user_id: Optional[int] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.subject and not self.email and self.user_id is None


Resolver = Callable[[Session, Identity], Optional[User]]


def by_persisted_id(db: Session, identity: Identity) -> Optional[User]:
    user_id = parse_user_id(identity.user_id)
    if user_id is None:
        return None
    return get_user_by_id(db, user_id)


def by_auth_provider_id(db: Session, identity: Identity) -> Optional[User]:
    if identity.subject:
        return get_user_by_auth_provider_id(db, identity.subject)
    return None


def by_email(db: Session, identity: Identity) -> Optional[User]:
    if identity.email:
        return get_user_by_email(db, identity.email)
    return None


RESOLVERS: Sequence[Resolver] = (by_persisted_id, by_auth_provider_id, by_email)


def resolve_user(db: Session, identity: Identity, resolvers: Sequence[Resolver] = RESOLVERS) -> User:
    if identity.is_anonymous:
        raise Unauthorized()
    for resolver in resolvers:
        user = resolver(db, identity)
        if user is not None:
            return user
    raise UserNotFound()


def get_identity(
    x_auth_subject: Optional[str] = Header(None),
    x_auth_email: Optional[str] = Header(None),
) -> Identity:
    return Identity(subject=(x_auth_subject or "").strip() or None, email=(x_auth_email or "").strip() or None)


def get_current_user(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)) -> User:
    return resolve_user(db, identity)
