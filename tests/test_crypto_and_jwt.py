import base64
import hashlib
import json
from datetime import datetime, timezone, timedelta

import pytest

from wsauth.errors import StoreCorrupt
from wsauth.openid import acr_values, claims_mismatch, decode_jwt_claims, decode_jwt_exp, pkce_pair
from wsauth.secret_store import seal, unseal

KEY = ("oidc", "default")


# Test intent: verify that seal and unseal are inverse operations given the
# same passphrase (round-trip correctness of the encrypted envelope).
def test_seal_unseal_roundtrip():
    blob = b'{"access_token": "at"}'
    pw = "s3cret-passphrase"

    content = seal(KEY, blob, pw, iterations=1000)

    assert unseal(KEY, content, pw) == blob


# Test intent: ensure the encrypted envelope has the expected shape and that
# core fields are valid base64 data.
def test_seal_produces_json_envelope():
    content = seal(KEY, b"another-token", "password", iterations=1000)
    obj = json.loads(content)

    assert obj["version"] == 1
    assert obj["enc"] == "AESGCM"
    assert obj["kdf"] == "PBKDF2-HMAC-SHA256"
    assert isinstance(obj["iter"], int)
    base64.b64decode(obj["salt"])
    base64.b64decode(obj["nonce"])
    base64.b64decode(obj["ct"])


# Test intent: without a passphrase the envelope is plain base64, and the blob
# still round-trips.
def test_seal_without_passphrase_is_plain_envelope():
    content = seal(KEY, b"plain", None)
    obj = json.loads(content)

    assert obj["enc"] == "none"
    assert unseal(KEY, content, None) == b"plain"


# Test intent: using the wrong passphrase must be reported as a corrupt record,
# never silently return incorrect data.
def test_unseal_with_wrong_passphrase_raises_store_corrupt():
    content = seal(KEY, b"token-value", "right-pass", iterations=1000)

    with pytest.raises(StoreCorrupt):
        unseal(KEY, content, "wrong-pass")


# Test intent: a ciphertext moved to a different key fails authentication
# because the key is bound in as associated data.
def test_unseal_under_other_key_raises_store_corrupt():
    content = seal(KEY, b"token-value", "pw", iterations=1000)

    with pytest.raises(StoreCorrupt):
        unseal(("aws-sso/wsauth", "default"), content, "pw")


# Test intent: truncated or garbage content is a corrupt record.
@pytest.mark.parametrize("content", [b"", b"{not json", b'{"version": 1, "enc": "AESGCM"}', b"\xff\xfe"])
def test_unseal_garbage_raises_store_corrupt(content):
    with pytest.raises(StoreCorrupt):
        unseal(KEY, content, "pw")


def _make_jwt(claims: dict) -> str:
    header = base64.urlsafe_b64encode(b"{}").decode().rstrip("=")
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{payload}.sig"


# Test intent: decode_jwt_exp should return a datetime corresponding to
# the exp claim when the JWT payload is well-formed and contains exp.
def test_decode_jwt_exp_valid():
    exp_ts = int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp())

    dt = decode_jwt_exp(_make_jwt({"exp": exp_ts}))
    assert dt is not None
    assert dt.tzinfo is not None
    assert int(dt.timestamp()) == exp_ts


# Test intent: decode_jwt_exp should return None when the JWT is missing
# an exp claim or is not a structurally valid JWT at all.
def test_decode_jwt_exp_missing_or_malformed():
    assert decode_jwt_exp(_make_jwt({})) is None
    assert decode_jwt_exp("not-a-jwt") is None
    assert decode_jwt_exp(None) is None
    assert decode_jwt_claims("a.!!!.c") == {}


# Test intent: the PKCE challenge is the unpadded base64url SHA-256 of the verifier.
def test_pkce_pair_s256():
    verifier, challenge = pkce_pair()
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")

    assert challenge == expected
    assert "=" not in verifier


# Test intent: organization login sends the organization id first, then one
# scope value per requested scope in a stable order.
def test_acr_values_format():
    value = acr_values(["openid", "email"], "org-1")

    assert value == "urn:auth:acr:organization-id:org-1 urn:auth:acr:scope:email urn:auth:acr:scope:openid"


# Test intent: claims_mismatch names the first desired claim the token lacks.
def test_claims_mismatch():
    assert claims_mismatch({"org": "acme"}, {"org": "acme"}) is None
    assert claims_mismatch({"org": "other"}, {"org": "acme"}) == "missing desired claim org"
    assert claims_mismatch({}, {"org": None}) is None
