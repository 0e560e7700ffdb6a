"""Verification of SSO access-broker assertions against the broker's key set.

The broker signs every request with an RS256 JWT carried in a request header.
Signing keys are fetched from the trust domain's certs endpoint, validated
against ``JWKS_SCHEMA`` and cached for ``ttl_seconds``.  A token naming a key
id that the cached set does not know triggers exactly one forced refresh
before the token is rejected, which covers broker key rotation.

Design notes
------------
* The key set is replaced wholesale on refresh; readers never see a
  partially built set and never take the lock.
* Concurrent refreshes are coalesced behind one ``asyncio.Lock``.
* Only the algorithm declared by the fetched key is accepted, so an
  ``alg: none`` or HS256 header cannot downgrade verification.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from time import monotonic
from typing import Any

import httpx
import jwt
from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate

logger = logging.getLogger("neoai.auth")

JWKS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["keys"],
    "properties": {
        "keys": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["kty"],
                "properties": {
                    "kid": {"type": "string"},
                    "kty": {"type": "string"},
                    "use": {"type": "string"},
                    "alg": {"type": "string"},
                },
            },
        }
    },
}


class TokenVerificationError(Exception):
    """Raised when an access assertion cannot be verified."""


@dataclass(frozen=True)
class CallerIdentity:
    id: str
    email: str
    display_name: str

    def as_dict(self) -> dict[str, str]:
        return {"id": self.id, "email": self.email, "name": self.display_name}


@dataclass(frozen=True)
class SigningKeySet:
    keys: Mapping[str, jwt.PyJWK]
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


def identity_from_claims(claims: Mapping[str, Any]) -> CallerIdentity:
    email = str(claims.get("email") or "")
    display_name = claims.get("name") or (email.split("@")[0] if email else "") or "User"
    return CallerIdentity(id=str(claims["sub"]), email=email, display_name=str(display_name))


class TokenVerifier:
    """Verifies broker assertions and maps their claims to a ``CallerIdentity``.

    Parameters
    ----------
    certs_url : str
        Key-set endpoint of the trust domain.
    audience : str, optional
        Expected ``aud`` claim.  When unset every token is rejected.
    ttl_seconds : float
        How long a fetched key set is trusted before it is re-fetched.
    timeout_s : float
        Timeout for the key-set request.
    transport : httpx.AsyncBaseTransport, optional
        Transport override, used by tests.
    clock : callable
        Monotonic clock used for key-set freshness.
    """

    def __init__(
        self,
        certs_url: str,
        audience: str | None = None,
        ttl_seconds: float = 600.0,
        timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._certs_url = certs_url
        self._audience = audience
        self._ttl_seconds = ttl_seconds
        self._timeout_s = timeout_s
        self._transport = transport
        self._clock = clock
        self._key_set: SigningKeySet | None = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def certs_url(self) -> str:
        return self._certs_url

    async def verify(self, token: str) -> CallerIdentity:
        if not token or token.count(".") != 2:
            raise TokenVerificationError("Invalid token format")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError("Invalid token header") from exc

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise TokenVerificationError("Token header has no key id")
        if not self._audience:
            raise TokenVerificationError("No expected audience configured")

        signing_key = await self._signing_key(kid)
        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=[signing_key.algorithm_name],
                audience=self._audience,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenVerificationError("Token expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenVerificationError("Invalid audience") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError("Invalid token signature or claims") from exc

        return identity_from_claims(claims)

    # ---- Key set management ----

    async def _signing_key(self, kid: str) -> jwt.PyJWK:
        key_set, fetched = await self._current_key_set()
        key = key_set.keys.get(kid)
        if key is None and not fetched:
            key_set = await self._refresh(stale=key_set)
            key = key_set.keys.get(kid)
        if key is None:
            raise TokenVerificationError("Unknown signing key")
        return key

    async def _current_key_set(self) -> tuple[SigningKeySet, bool]:
        key_set = self._key_set
        if key_set is not None and key_set.is_fresh(self._clock()):
            return key_set, False
        return await self._refresh(stale=key_set), True

    async def _refresh(self, stale: SigningKeySet | None) -> SigningKeySet:
        async with self._lock:
            current = self._key_set
            # Another caller already replaced the set while we waited.
            if current is not None and current is not stale and current.is_fresh(self._clock()):
                return current
            key_set = await self._fetch()
            self._key_set = key_set
            return key_set

    async def _fetch(self) -> SigningKeySet:
        self.fetch_count += 1
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s, transport=self._transport
            ) as client:
                response = await client.get(
                    self._certs_url, headers={"accept": "application/json"}
                )
        except httpx.HTTPError as exc:
            logger.warning("signing_keys_fetch_failed", extra={"error": str(exc)})
            raise TokenVerificationError("Unable to fetch signing keys") from exc

        if response.status_code >= 400:
            logger.warning(
                "signing_keys_fetch_failed", extra={"status_code": response.status_code}
            )
            raise TokenVerificationError(
                f"Failed to fetch signing keys: HTTP {response.status_code}"
            )

        try:
            document = response.json()
            validate(instance=document, schema=JWKS_SCHEMA)
        except ValueError as exc:
            raise TokenVerificationError("Signing key document is not JSON") from exc
        except SchemaValidationError as exc:
            raise TokenVerificationError("Signing key document is malformed") from exc

        keys: dict[str, jwt.PyJWK] = {}
        for raw_key in document["keys"]:
            kid = raw_key.get("kid")
            if not kid or raw_key.get("kty") != "RSA" or raw_key.get("use", "sig") != "sig":
                continue
            try:
                keys[kid] = jwt.PyJWK(raw_key)
            except (jwt.PyJWKError, jwt.InvalidKeyError):
                logger.warning("signing_key_skipped", extra={"error": f"unparseable key {kid}"})
                continue

        logger.info("signing_keys_refreshed", extra={"key_count": len(keys)})
        return SigningKeySet(keys=keys, expires_at=self._clock() + self._ttl_seconds)
