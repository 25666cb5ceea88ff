"""
Caller identity, session tokens and the time source.

The host wiki authenticates users; this service only receives the result
in request headers and turns it into an ``Actor`` that is passed
explicitly to every service call.

The identity headers are trusted as sent, so the service must sit behind
the wiki or a proxy that sets them. When ``api_key`` is configured, they
are only honoured on requests that also carry a matching ``X-API-Key``;
anything else is treated as an anonymous caller.
"""

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Callable, FrozenSet, Optional

from fastapi import Depends, Header, Request

from review_api.config import Settings, get_settings
from review_api.models import Capability
from review_api.security import log_untrusted_identity


TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[a-f0-9]{%d}$" % (TOKEN_BYTES * 2))

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def get_clock() -> Clock:
    """Dependency returning the wall-clock time source."""
    return utcnow


@dataclass(frozen=True)
class Actor:
    """Whoever is making the current request."""

    user_id: Optional[int] = None
    session_token: Optional[str] = None
    ip_hash: Optional[str] = None
    rights: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_registered(self) -> bool:
        return self.user_id is not None and self.user_id > 0

    def is_allowed(self, capability: Capability) -> bool:
        return capability.value in self.rights


def parse_rights(value: Optional[str]) -> FrozenSet[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def hash_ip(ip: str, salt: str) -> str:
    """One-way salted hash of a client address."""
    return hashlib.sha256(f"{ip}{salt}".encode("utf-8")).hexdigest()


def new_session_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def is_valid_token(token: Optional[str]) -> bool:
    return bool(token) and _TOKEN_RE.match(token) is not None


def can_edit_review(review, actor: Actor) -> bool:
    """
    Whether the actor owns the review.

    Registered authors own their reviews. Anonymous reviews written with a
    session token may be edited by an anonymous caller presenting the same
    token. Moderator overrides are checked by the caller.
    """
    if actor.is_registered and review.user_id == actor.user_id:
        return True

    if not review.session_token or actor.is_registered:
        return False

    if not actor.session_token:
        return False
    return hmac.compare_digest(actor.session_token, review.session_token)


def get_actor(
    request: Request,
    x_user_id: Optional[int] = Header(default=None),
    x_user_rights: Optional[str] = Header(default=None),
    x_session_token: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Actor:
    """
    Build the caller's identity from headers set by the host wiki.

    Callers that send no explicit rights get the configured defaults for
    registered or anonymous users. Malformed session tokens are ignored.
    User id and rights headers without the configured API key are dropped.
    """
    client_ip = request.client.host if request.client else "unknown"
    ip_hash = hash_ip(client_ip, settings.ip_hash_salt)

    if settings.api_key and not hmac.compare_digest(
        (x_api_key or "").encode("utf-8"), settings.api_key.encode("utf-8")
    ):
        if x_user_id is not None or x_user_rights is not None:
            log_untrusted_identity(x_user_id, ip_hash)
        x_user_id = x_user_rights = None

    user_id = x_user_id if x_user_id and x_user_id > 0 else None

    if x_user_rights is not None:
        rights = parse_rights(x_user_rights)
    elif user_id is not None:
        rights = parse_rights(settings.registered_rights)
    else:
        rights = parse_rights(settings.anonymous_rights)

    return Actor(
        user_id=user_id,
        session_token=x_session_token if is_valid_token(x_session_token) else None,
        ip_hash=ip_hash,
        rights=rights,
    )
