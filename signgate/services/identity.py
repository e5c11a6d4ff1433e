"""
signgate/services/identity.py

Identity Resolver: turns request metadata into exactly one caller
identity.

Resolution order:
  1. `Authorization: Bearer <key>`
  2. `X-API-Key`
  3. Session token (`X-Session-Token` header or `session` cookie)
  4. No credential → anonymous IP identity from proxy headers

Design Decisions:
- A presented credential is never silently downgraded to an IP
  identity. If it fails validation the request is rejected, with the
  same generic message for an unknown key and an inactive one. A key
  that is not `sk_` + 64 hex characters is rejected without a lookup.
- Any authenticated credential gets unlimited-class limits, whatever
  tier the account row says. The stored tier is kept on the identity
  for logging only.
- The left-most valid X-Forwarded-For entry is the original client. Every
  proxy hop appends to the right.
- The "last used" stamp goes through the background dispatcher and
  may be lost.
"""

from __future__ import annotations

import enum
import ipaddress
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol, Union

from starlette.requests import Request

from signgate.services.background import BackgroundDispatcher
from signgate.services.quota_windows import Tier, utcnow
from signgate.utils.exceptions import (
    CredentialNotFoundError,
    InvalidCredentialError,
    UnauthenticatedError,
)
from signgate.utils.logger import get_logger, mask_secret

logger = get_logger(__name__)

SESSION_COOKIE = "session"
_API_KEY_RE = re.compile(r"^sk_[0-9a-f]{64}$")


class AuthMethod(str, enum.Enum):
    API_KEY = "api_key"
    SESSION = "session"
    IP = "ip"


# ── Identities ────────────────────────────────────────────────

@dataclass(frozen=True)
class IPIdentity:
    """Anonymous caller keyed by network address."""

    address: str

    @property
    def tier(self) -> Tier:
        return Tier.FREE

    @property
    def scope(self) -> str:
        return f"ip:{self.address}"

    @property
    def auth_method(self) -> AuthMethod:
        return AuthMethod.IP


@dataclass(frozen=True)
class AccountIdentity:
    """Authenticated caller keyed by account."""

    account_id: str
    credential_id: str
    auth_method: AuthMethod
    account_tier: Tier = Tier.FREE

    @property
    def tier(self) -> Tier:
        return Tier.UNLIMITED

    @property
    def scope(self) -> str:
        return f"account:{self.account_id}"


Identity = Union[IPIdentity, AccountIdentity]


def has_permission(identity: Identity, required_tier: Tier | None = None) -> bool:
    """True if `identity` may use an endpoint gated on `required_tier`."""
    if required_tier is None:
        return True
    tier = identity.tier
    if tier is Tier.UNLIMITED:
        return True
    if tier is Tier.FREE:
        return required_tier is Tier.FREE
    raise ValueError(f"Unhandled tier: {tier!r}")


# ── Credentials ───────────────────────────────────────────────

@dataclass(frozen=True)
class Credential:
    kind: AuthMethod
    secret: str


@dataclass(frozen=True)
class CredentialRecord:
    """What a validator knows about a credential."""

    account_id: str
    credential_id: str
    tier: Tier
    active: bool


class CredentialValidator(Protocol):
    async def validate(self, credential: Credential) -> CredentialRecord:
        """Look the credential up by hash. Raises CredentialNotFoundError on a miss."""
        ...

    async def touch_last_used(self, credential_id: str, at: datetime) -> None:
        ...


# ── Request metadata ──────────────────────────────────────────

@dataclass(frozen=True)
class RequestMetadata:
    """The subset of an HTTP request the resolver needs."""

    authorization: str | None = None
    api_key: str | None = None
    session_token: str | None = None
    forwarded_for: str | None = None
    real_ip: str | None = None
    vercel_forwarded_for: str | None = None
    client_host: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMetadata":
        headers = request.headers
        return cls(
            authorization=headers.get("authorization"),
            api_key=headers.get("x-api-key"),
            session_token=headers.get("x-session-token") or request.cookies.get(SESSION_COOKIE),
            forwarded_for=headers.get("x-forwarded-for"),
            real_ip=headers.get("x-real-ip"),
            vercel_forwarded_for=headers.get("x-vercel-forwarded-for"),
            client_host=request.client.host if request.client else None,
        )


def _first_hop(header_value: str | None) -> str | None:
    """Left-most entry of a comma-separated proxy header that parses as an IP."""
    if not header_value:
        return None
    for entry in header_value.split(","):
        entry = entry.strip()
        if entry and is_valid_ip(entry):
            return entry
    return None


def extract_client_ip(metadata: RequestMetadata) -> str | None:
    """
    Original client address, preferring proxy headers over the peer.

    Values that are not IP addresses ("unknown", hostnames) are skipped
    so they can never become a rate-limit scope.
    """
    return (
        _first_hop(metadata.forwarded_for)
        or _first_hop(metadata.real_ip)
        or _first_hop(metadata.vercel_forwarded_for)
        or _first_hop(metadata.client_host)
    )


def extract_credential(metadata: RequestMetadata) -> Credential | None:
    if metadata.authorization:
        scheme, _, token = metadata.authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return Credential(AuthMethod.API_KEY, token.strip())
    if metadata.api_key and metadata.api_key.strip():
        return Credential(AuthMethod.API_KEY, metadata.api_key.strip())
    if metadata.session_token and metadata.session_token.strip():
        return Credential(AuthMethod.SESSION, metadata.session_token.strip())
    return None


def validate_api_key_format(api_key: str) -> bool:
    """`sk_` followed by 64 lowercase hex characters."""
    return bool(_API_KEY_RE.match(api_key))


def is_valid_ip(address: str) -> bool:
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return False
    return True


# ── Resolver ──────────────────────────────────────────────────

class IdentityResolver:
    """
    Resolve each request to an IPIdentity or an AccountIdentity.

    Usage:
        resolver = IdentityResolver(validator, dispatcher)
        identity = await resolver.resolve(RequestMetadata.from_request(request))
    """

    def __init__(
        self,
        validator: CredentialValidator,
        dispatcher: BackgroundDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._validator = validator
        self._dispatcher = dispatcher
        self._clock = clock

    async def resolve(self, metadata: RequestMetadata) -> Identity:
        """
        Raises:
            InvalidCredentialError: Credential unknown or inactive.
            UnauthenticatedError: No credential and no usable address.
            StoreUnavailableError: The validator's store could not be reached.
        """
        credential = extract_credential(metadata)
        if credential is not None:
            return await self._authenticate(credential)

        address = extract_client_ip(metadata)
        if not address:
            raise UnauthenticatedError("Could not determine client identity.")
        return IPIdentity(address=address)

    async def _authenticate(self, credential: Credential) -> AccountIdentity:
        if credential.kind is AuthMethod.API_KEY and not validate_api_key_format(credential.secret):
            logger.warning("Malformed API key rejected", credential=mask_secret(credential.secret))
            raise InvalidCredentialError()

        try:
            record = await self._validator.validate(credential)
        except CredentialNotFoundError as exc:
            logger.warning(
                "Credential rejected",
                method=credential.kind.value,
                credential=mask_secret(credential.secret),
            )
            raise InvalidCredentialError() from exc

        if not record.active:
            logger.warning(
                "Inactive credential rejected",
                method=credential.kind.value,
                credential_id=record.credential_id,
            )
            raise InvalidCredentialError()

        self._dispatcher.dispatch(
            "touch_last_used",
            self._validator.touch_last_used(record.credential_id, self._clock()),
        )
        return AccountIdentity(
            account_id=record.account_id,
            credential_id=record.credential_id,
            auth_method=credential.kind,
            account_tier=record.tier,
        )
