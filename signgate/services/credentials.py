"""
signgate/services/credentials.py

Credential validators for API keys and session tokens, plus API key
administration for account owners.

Design Decisions:
- Only SHA-256 digests of secrets are stored. Lookup is a single
  HGETALL on the digest, so a raw key never touches Redis or the logs.
- API keys are issued as `sk_` + 64 hex characters and shown to the
  owner exactly once, at creation.
- Each account keeps an index of its key IDs. Listing and revoking go
  through that index, so an owner can only ever reach their own keys.
- Revocation flips the `active` flag rather than deleting the row, so
  "revoked" and "never existed" stay distinguishable in the store
  while still producing the same response to the caller.
- Session tokens are minted by the external login service. This module
  only reads them.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

import redis.asyncio as aioredis

from signgate.services.identity import AuthMethod, Credential, CredentialRecord
from signgate.services.quota_store import call_with_timeout
from signgate.services.quota_windows import Tier, utcnow
from signgate.utils.exceptions import ApiKeyNotFoundError, CredentialNotFoundError
from signgate.utils.logger import get_logger

logger = get_logger(__name__)

API_KEY_PREFIX = "sk_"
DEFAULT_KEY_NAME = "Default"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Older rows carry the pre-enum tier label for keyed accounts.
_TIER_ALIASES: dict[str, Tier] = {
    "free": Tier.FREE,
    "unlimited": Tier.UNLIMITED,
    "api_key": Tier.UNLIMITED,
}


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


@dataclass(frozen=True)
class ApiKeySummary:
    """What an owner sees about one of their keys. Never the key itself."""

    credential_id: str
    name: str
    created_at: datetime
    last_used: datetime | None = None
    active: bool = True


class CredentialStore(abc.ABC):
    """Credential lookups for the resolver plus key administration for owners."""

    @abc.abstractmethod
    async def validate(self, credential: Credential) -> CredentialRecord:
        """Raises CredentialNotFoundError on a miss."""

    @abc.abstractmethod
    async def touch_last_used(self, credential_id: str, at: datetime) -> None:
        ...

    @abc.abstractmethod
    async def issue_api_key(
        self,
        account_id: str,
        name: str = DEFAULT_KEY_NAME,
        tier: Tier = Tier.UNLIMITED,
        at: datetime | None = None,
    ) -> tuple[str, ApiKeySummary]:
        """
        Create a new API key for `account_id`.

        Returns:
            The raw key (only chance to see it) and its summary.
        """

    @abc.abstractmethod
    async def list_api_keys(self, account_id: str) -> list[ApiKeySummary]:
        """Active keys of the account, newest first."""

    @abc.abstractmethod
    async def revoke_api_key(self, account_id: str, credential_id: str) -> ApiKeySummary:
        """
        Deactivate one of the account's keys.

        Raises:
            ApiKeyNotFoundError: Not this account's key, or already revoked.
        """


# ── Redis implementation ──────────────────────────────────────

class RedisCredentialValidator(CredentialStore):
    """
    CredentialStore over Redis hashes.

    Keys:
        {prefix}credential:{kind}:{sha256}   hash: account_id, credential_id, tier, active, name, created_at
        {prefix}account-keys:{account_id}    hash: credential_id → sha256 of the key
        {prefix}credential-last-used         hash: credential_id → ISO timestamp
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout_seconds: float = 0.25,
        key_prefix: str = "signgate:",
    ) -> None:
        self._redis = redis_client
        self._timeout = timeout_seconds
        self._prefix = key_prefix
        self._last_used_key = f"{key_prefix}credential-last-used"

    async def validate(self, credential: Credential) -> CredentialRecord:
        key = self._key(credential.kind, hash_secret(credential.secret))
        data = await call_with_timeout("validate_credential", self._redis.hgetall(key), self._timeout)
        if not data:
            raise CredentialNotFoundError("No credential matches this digest.")

        return CredentialRecord(
            account_id=data["account_id"],
            credential_id=data["credential_id"],
            tier=_TIER_ALIASES.get(data.get("tier", "free"), Tier.FREE),
            active=data.get("active", "0") == "1",
        )

    async def touch_last_used(self, credential_id: str, at: datetime) -> None:
        await call_with_timeout(
            "touch_last_used",
            self._redis.hset(self._last_used_key, credential_id, at.isoformat()),
            self._timeout,
        )

    # ── Administration ─────────────────────────────────────────

    async def issue_api_key(
        self,
        account_id: str,
        name: str = DEFAULT_KEY_NAME,
        tier: Tier = Tier.UNLIMITED,
        at: datetime | None = None,
    ) -> tuple[str, ApiKeySummary]:
        raw_key = generate_api_key()
        digest = hash_secret(raw_key)
        summary = ApiKeySummary(credential_id=uuid.uuid4().hex, name=name, created_at=at or utcnow())

        async def _store() -> None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._key(AuthMethod.API_KEY, digest),
                    mapping={
                        "account_id": account_id,
                        "credential_id": summary.credential_id,
                        "tier": tier.value,
                        "active": "1",
                        "name": name,
                        "created_at": summary.created_at.isoformat(),
                    },
                )
                pipe.hset(self._index_key(account_id), summary.credential_id, digest)
                await pipe.execute()

        await call_with_timeout("issue_api_key", _store(), self._timeout)
        logger.info("API key issued", account_id=account_id, credential_id=summary.credential_id)
        return raw_key, summary

    async def list_api_keys(self, account_id: str) -> list[ApiKeySummary]:
        index = await call_with_timeout(
            "list_api_keys", self._redis.hgetall(self._index_key(account_id)), self._timeout
        )
        if not index:
            return []

        async def _read() -> tuple[list, list]:
            async with self._redis.pipeline(transaction=False) as pipe:
                for digest in index.values():
                    pipe.hgetall(self._key(AuthMethod.API_KEY, digest))
                rows = await pipe.execute()
            last_used = await self._redis.hmget(self._last_used_key, list(index))
            return rows, last_used

        rows, last_used = await call_with_timeout("list_api_keys", _read(), self._timeout)
        stamps = dict(zip(index, last_used))
        summaries = [
            _summary(row, stamps.get(row.get("credential_id")))
            for row in rows
            if row and row.get("active") == "1"
        ]
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    async def revoke_api_key(self, account_id: str, credential_id: str) -> ApiKeySummary:
        digest = await call_with_timeout(
            "revoke_api_key",
            self._redis.hget(self._index_key(account_id), credential_id),
            self._timeout,
        )
        if digest is None:
            raise ApiKeyNotFoundError("API key not found or access denied.")

        key = self._key(AuthMethod.API_KEY, digest)
        row = await call_with_timeout("revoke_api_key", self._redis.hgetall(key), self._timeout)
        if not row or row.get("active") != "1":
            raise ApiKeyNotFoundError("API key not found or access denied.")

        await call_with_timeout("revoke_api_key", self._redis.hset(key, "active", "0"), self._timeout)
        logger.info("API key revoked", account_id=account_id, credential_id=credential_id)
        return replace(_summary(row, None), active=False)

    def _key(self, kind: AuthMethod, digest: str) -> str:
        return f"{self._prefix}credential:{kind.value}:{digest}"

    def _index_key(self, account_id: str) -> str:
        return f"{self._prefix}account-keys:{account_id}"


def _summary(row: dict[str, str], last_used: str | None) -> ApiKeySummary:
    created = row.get("created_at")
    return ApiKeySummary(
        credential_id=row["credential_id"],
        name=row.get("name") or DEFAULT_KEY_NAME,
        created_at=datetime.fromisoformat(created) if created else _EPOCH,
        last_used=datetime.fromisoformat(last_used) if last_used else None,
        active=row.get("active") == "1",
    )


# ── In-memory implementation ──────────────────────────────────

@dataclass
class _StoredCredential:
    record: CredentialRecord
    summary: ApiKeySummary | None = None


class InMemoryCredentialStore(CredentialStore):
    """Single-process credential store for tests and local development."""

    def __init__(self) -> None:
        self._by_digest: dict[tuple[AuthMethod, str], _StoredCredential] = {}
        self._last_used: dict[str, datetime] = {}

    def add_session(self, token: str, account_id: str, tier: Tier = Tier.FREE) -> CredentialRecord:
        """Stand in for the external login service."""
        record = CredentialRecord(account_id, f"session-{uuid.uuid4().hex}", tier, active=True)
        self._by_digest[(AuthMethod.SESSION, hash_secret(token))] = _StoredCredential(record)
        return record

    async def validate(self, credential: Credential) -> CredentialRecord:
        await asyncio.sleep(0)
        stored = self._by_digest.get((credential.kind, hash_secret(credential.secret)))
        if stored is None:
            raise CredentialNotFoundError("No credential matches this digest.")
        return stored.record

    async def touch_last_used(self, credential_id: str, at: datetime) -> None:
        await asyncio.sleep(0)
        self._last_used[credential_id] = at

    async def issue_api_key(
        self,
        account_id: str,
        name: str = DEFAULT_KEY_NAME,
        tier: Tier = Tier.UNLIMITED,
        at: datetime | None = None,
    ) -> tuple[str, ApiKeySummary]:
        await asyncio.sleep(0)
        raw_key = generate_api_key()
        summary = ApiKeySummary(credential_id=uuid.uuid4().hex, name=name, created_at=at or utcnow())
        record = CredentialRecord(account_id, summary.credential_id, tier, active=True)
        self._by_digest[(AuthMethod.API_KEY, hash_secret(raw_key))] = _StoredCredential(record, summary)
        return raw_key, summary

    async def list_api_keys(self, account_id: str) -> list[ApiKeySummary]:
        await asyncio.sleep(0)
        summaries = [
            replace(stored.summary, last_used=self._last_used.get(stored.record.credential_id))
            for stored in self._owned(account_id)
            if stored.record.active
        ]
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    async def revoke_api_key(self, account_id: str, credential_id: str) -> ApiKeySummary:
        await asyncio.sleep(0)
        for stored in self._owned(account_id):
            if stored.record.credential_id == credential_id and stored.record.active:
                stored.record = replace(stored.record, active=False)
                stored.summary = replace(stored.summary, active=False)
                return stored.summary
        raise ApiKeyNotFoundError("API key not found or access denied.")

    def _owned(self, account_id: str) -> list[_StoredCredential]:
        return [
            stored
            for stored in self._by_digest.values()
            if stored.summary is not None and stored.record.account_id == account_id
        ]
