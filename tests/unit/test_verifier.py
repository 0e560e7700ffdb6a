import asyncio
import base64
import json
import time

import httpx
import jwt
import pytest
from conftest import ACCESS_AUDIENCE, AccessSigner

from neoai_gateway.auth.verifier import (
    TokenVerificationError,
    TokenVerifier,
    identity_from_claims,
)

CERTS_URL = "https://neoai-test.cloudflareaccess.com/cdn-cgi/access/certs"


def _verifier(handler, **kwargs) -> TokenVerifier:  # type: ignore[no-untyped-def]
    return TokenVerifier(
        CERTS_URL,
        audience=ACCESS_AUDIENCE,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _b64(data: dict[str, object]) -> str:
    raw = json.dumps(data).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def test_valid_token_maps_claims_to_identity(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)

    identity = asyncio.run(verifier.verify(access_signer.token(name="Ada Lovelace")))

    assert identity.id == "user-123"
    assert identity.email == "ada@example.com"
    assert identity.display_name == "Ada Lovelace"


def test_key_set_is_cached_between_verifications(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)

    async def _run() -> None:
        await verifier.verify(access_signer.token())
        await verifier.verify(access_signer.token())

    asyncio.run(_run())

    assert verifier.fetch_count == 1
    assert access_signer.fetches == 1


def test_unknown_kid_forces_one_refresh_then_fails(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)
    stranger = AccessSigner(kid="key-2")

    async def _run() -> None:
        await verifier.verify(access_signer.token())
        await verifier.verify(stranger.token())

    with pytest.raises(TokenVerificationError, match="Unknown signing key"):
        asyncio.run(_run())
    assert verifier.fetch_count == 2


def test_unknown_kid_on_first_fetch_does_not_refetch(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)

    with pytest.raises(TokenVerificationError, match="Unknown signing key"):
        asyncio.run(verifier.verify(AccessSigner(kid="key-2").token()))
    assert verifier.fetch_count == 1


def test_rotated_key_is_picked_up_by_forced_refresh() -> None:
    old_signer = AccessSigner(kid="key-1")
    new_signer = AccessSigner(kid="key-2")
    served = [old_signer.jwk()]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"keys": list(served)})

    verifier = _verifier(handler)

    async def _run() -> str:
        await verifier.verify(old_signer.token())
        served[:] = [new_signer.jwk()]
        identity = await verifier.verify(new_signer.token(sub="user-456"))
        return identity.id

    assert asyncio.run(_run()) == "user-456"
    assert verifier.fetch_count == 2


def test_expired_token_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)

    with pytest.raises(TokenVerificationError, match="Token expired"):
        asyncio.run(verifier.verify(access_signer.token(exp=int(time.time()) - 30)))


def test_audience_mismatch_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)

    with pytest.raises(TokenVerificationError, match="Invalid audience"):
        asyncio.run(verifier.verify(access_signer.token(aud=["someone-else"])))


@pytest.mark.parametrize("aud", [["someone-else"], [ACCESS_AUDIENCE]])
def test_every_token_is_rejected_when_no_audience_is_configured(
    access_signer: AccessSigner, aud: list[str]
) -> None:
    verifier = TokenVerifier(CERTS_URL, transport=httpx.MockTransport(access_signer.handler))

    with pytest.raises(TokenVerificationError, match="No expected audience configured"):
        asyncio.run(verifier.verify(access_signer.token(aud=aud)))
    assert verifier.fetch_count == 0


def test_signature_from_another_key_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)
    impostor = AccessSigner(kid=access_signer.kid)

    with pytest.raises(TokenVerificationError, match="Invalid token signature or claims"):
        asyncio.run(verifier.verify(impostor.token()))


def test_missing_subject_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)
    claims = {"email": "ada@example.com", "aud": [ACCESS_AUDIENCE], "exp": int(time.time()) + 60}
    token = jwt.encode(
        claims, access_signer.private_key, algorithm="RS256", headers={"kid": access_signer.kid}
    )

    with pytest.raises(TokenVerificationError, match="Invalid token signature or claims"):
        asyncio.run(verifier.verify(token))


def test_malformed_token_is_rejected_without_fetching(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)

    with pytest.raises(TokenVerificationError, match="Invalid token format"):
        asyncio.run(verifier.verify("not-a-token"))
    with pytest.raises(TokenVerificationError, match="Invalid token format"):
        asyncio.run(verifier.verify(""))
    assert verifier.fetch_count == 0


def test_token_without_kid_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)
    token = jwt.encode(
        {"sub": "user-123", "exp": int(time.time()) + 60},
        access_signer.private_key,
        algorithm="RS256",
    )

    with pytest.raises(TokenVerificationError, match="no key id"):
        asyncio.run(verifier.verify(token))
    assert verifier.fetch_count == 0


def test_alg_none_token_cannot_downgrade_verification(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)
    header = _b64({"alg": "none", "typ": "JWT", "kid": access_signer.kid})
    payload = _b64({"sub": "attacker", "aud": [ACCESS_AUDIENCE], "exp": int(time.time()) + 60})

    with pytest.raises(TokenVerificationError, match="Invalid token signature or claims"):
        asyncio.run(verifier.verify(f"{header}.{payload}."))


def test_key_set_is_refetched_after_ttl(access_signer: AccessSigner) -> None:
    now = [1_000.0]
    verifier = _verifier(access_signer.handler, ttl_seconds=600, clock=lambda: now[0])

    async def _run() -> None:
        await verifier.verify(access_signer.token())
        now[0] += 599
        await verifier.verify(access_signer.token())
        now[0] += 2
        await verifier.verify(access_signer.token())

    asyncio.run(_run())

    assert verifier.fetch_count == 2


def test_concurrent_verifications_share_one_fetch(access_signer: AccessSigner) -> None:
    verifier = _verifier(access_signer.handler)
    token = access_signer.token()

    async def _run() -> list[str]:
        identities = await asyncio.gather(*(verifier.verify(token) for _ in range(5)))
        return [identity.id for identity in identities]

    assert asyncio.run(_run()) == ["user-123"] * 5
    assert verifier.fetch_count == 1


def test_key_set_http_error_is_reported(access_signer: AccessSigner) -> None:
    verifier = _verifier(lambda request: httpx.Response(500, text="down"))

    with pytest.raises(TokenVerificationError, match="HTTP 500"):
        asyncio.run(verifier.verify(access_signer.token()))


def test_key_set_transport_error_is_reported(access_signer: AccessSigner) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    verifier = _verifier(handler)

    with pytest.raises(TokenVerificationError, match="Unable to fetch signing keys"):
        asyncio.run(verifier.verify(access_signer.token()))


def test_key_set_that_is_not_json_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(TokenVerificationError, match="not JSON"):
        asyncio.run(verifier.verify(access_signer.token()))


def test_key_set_failing_schema_is_rejected(access_signer: AccessSigner) -> None:
    verifier = _verifier(lambda request: httpx.Response(200, json={"keys": "nope"}))

    with pytest.raises(TokenVerificationError, match="malformed"):
        asyncio.run(verifier.verify(access_signer.token()))


def test_encryption_keys_are_ignored(access_signer: AccessSigner) -> None:
    encryption_key = {**access_signer.jwk(), "use": "enc"}
    verifier = _verifier(lambda request: httpx.Response(200, json={"keys": [encryption_key]}))

    with pytest.raises(TokenVerificationError, match="Unknown signing key"):
        asyncio.run(verifier.verify(access_signer.token()))


def test_identity_name_falls_back_to_email_then_placeholder() -> None:
    assert identity_from_claims({"sub": "u1", "email": "grace@navy.mil"}).display_name == "grace"
    assert identity_from_claims({"sub": "u2"}).display_name == "User"
    assert identity_from_claims({"sub": "u3"}).as_dict() == {
        "id": "u3",
        "email": "",
        "name": "User",
    }
