"""
测试 verifier.py 模块：签名、声明与 audience 的校验顺序和错误类型。
"""

import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import ECAlgorithm, RSAAlgorithm

from src.server.auth.verifier import TokenVerifier
from src.server.errors import (
    AudienceMismatchError,
    ClaimsInvalidError,
    MalformedTokenError,
    SignatureError,
)

CLIENT_ID = "nebula-client"
ISSUER = "https://idp.example.com"


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def other_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def key_set(rsa_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk.update({"kid": "k1", "alg": "RS256", "use": "sig"})
    return jwt.PyJWKSet.from_dict({"keys": [jwk]})


def _claims(**overrides):
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "sub": "user-1",
        "email": "alice@example.com",
        "iat": now,
        "exp": now + 300,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


def _token(key, kid="k1", **overrides):
    return jwt.encode(_claims(**overrides), key, algorithm="RS256", headers={"kid": kid})


def _verifier(**kwargs):
    return TokenVerifier(client_id=CLIENT_ID, **kwargs)


def test_verify_valid_token(rsa_key, key_set):
    identity = _verifier(issuer=ISSUER).verify(_token(rsa_key), key_set)

    assert identity.email == "alice@example.com"
    assert identity.subject == "user-1"
    assert identity.issuer == ISSUER
    assert identity.audience == [CLIENT_ID]
    assert identity.expires_at > identity.issued_at


def test_verify_audience_list_containing_client_id(rsa_key, key_set):
    token = _token(rsa_key, aud=["other-app", CLIENT_ID])

    identity = _verifier().verify(token, key_set)

    assert identity.audience == ["other-app", CLIENT_ID]


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.@@@.###"])
def test_verify_malformed_token(key_set, token):
    with pytest.raises(MalformedTokenError):
        _verifier().verify(token, key_set)


def test_verify_wrong_signing_key(other_rsa_key, key_set):
    # 声明完全正确，但签名来自不在 JWKS 中的私钥
    token = _token(other_rsa_key)

    with pytest.raises(SignatureError):
        _verifier().verify(token, key_set)


def test_verify_unknown_kid(rsa_key, key_set):
    with pytest.raises(SignatureError):
        _verifier().verify(_token(rsa_key, kid="unknown"), key_set)


def test_verify_missing_kid(rsa_key, key_set):
    token = jwt.encode(_claims(), rsa_key, algorithm="RS256")

    with pytest.raises(SignatureError):
        _verifier().verify(token, key_set)


def test_verify_alg_none_rejected(key_set):
    token = jwt.encode(_claims(), None, algorithm="none", headers={"kid": "k1"})

    with pytest.raises(SignatureError):
        _verifier().verify(token, key_set)


def test_verify_signature_checked_before_claims(other_rsa_key, key_set):
    # 既过期又签名错误：必须报签名错误，而不是声明错误
    now = int(time.time())
    token = _token(other_rsa_key, iat=now - 7200, exp=now - 3600, aud="someone-else")

    with pytest.raises(SignatureError):
        _verifier().verify(token, key_set)


def test_verify_expired(rsa_key, key_set):
    now = int(time.time())
    token = _token(rsa_key, iat=now - 7200, exp=now - 3600)

    with pytest.raises(ClaimsInvalidError) as exc_info:
        _verifier().verify(token, key_set)
    assert exc_info.value.claim == "exp"


def test_verify_issued_in_future(rsa_key, key_set):
    now = int(time.time())
    token = _token(rsa_key, iat=now + 600, exp=now + 1200)

    with pytest.raises(ClaimsInvalidError) as exc_info:
        _verifier(leeway=30).verify(token, key_set)
    assert exc_info.value.claim == "iat"


def test_verify_leeway_tolerates_small_skew(rsa_key, key_set):
    now = int(time.time())
    token = _token(rsa_key, iat=now + 10, exp=now + 300)

    identity = _verifier(leeway=60).verify(token, key_set)

    assert identity.email == "alice@example.com"


def test_verify_missing_exp(rsa_key, key_set):
    token = jwt.encode(
        {"aud": CLIENT_ID, "email": "alice@example.com", "iat": int(time.time())},
        rsa_key,
        algorithm="RS256",
        headers={"kid": "k1"},
    )

    with pytest.raises(ClaimsInvalidError) as exc_info:
        _verifier().verify(token, key_set)
    assert exc_info.value.claim == "exp"


def test_verify_issuer_mismatch(rsa_key, key_set):
    token = _token(rsa_key, iss="https://evil.example.com")

    with pytest.raises(ClaimsInvalidError) as exc_info:
        _verifier(issuer=ISSUER).verify(token, key_set)
    assert exc_info.value.claim == "iss"


def test_verify_issuer_not_checked_when_unconfigured(rsa_key, key_set):
    token = _token(rsa_key, iss="https://another-idp.example.com")

    identity = _verifier().verify(token, key_set)

    assert identity.issuer == "https://another-idp.example.com"


def test_verify_audience_mismatch(rsa_key, key_set):
    token = _token(rsa_key, aud=["other-app"])

    with pytest.raises(AudienceMismatchError):
        _verifier().verify(token, key_set)


def test_verify_audience_mismatch_is_not_claims_invalid(rsa_key, key_set):
    token = _token(rsa_key, aud="other-app")

    with pytest.raises(AudienceMismatchError) as exc_info:
        _verifier().verify(token, key_set)
    assert not isinstance(exc_info.value, ClaimsInvalidError)


def test_verify_audience_prefix_is_not_a_match(rsa_key, key_set):
    token = _token(rsa_key, aud=CLIENT_ID + "-staging")

    with pytest.raises(AudienceMismatchError):
        _verifier().verify(token, key_set)


def test_verify_missing_audience(rsa_key, key_set):
    token = _token(rsa_key, aud=None)

    with pytest.raises(AudienceMismatchError):
        _verifier().verify(token, key_set)


def test_verify_missing_email(rsa_key, key_set):
    token = _token(rsa_key, email=None)

    with pytest.raises(ClaimsInvalidError) as exc_info:
        _verifier().verify(token, key_set)
    assert exc_info.value.claim == "email"


def test_verify_ec_key():
    ec_key = ec.generate_private_key(ec.SECP256R1())
    jwk = json.loads(ECAlgorithm.to_jwk(ec_key.public_key()))
    jwk.update({"kid": "ec1", "alg": "ES256"})
    ec_set = jwt.PyJWKSet.from_dict({"keys": [jwk]})
    token = jwt.encode(_claims(), ec_key, algorithm="ES256", headers={"kid": "ec1"})

    identity = _verifier().verify(token, ec_set)

    assert identity.email == "alice@example.com"


def test_verify_exp_out_of_datetime_range(rsa_key, key_set):
    """测试 exp 超出 datetime 可表示范围时仍报声明错误"""
    token = _token(rsa_key, exp=10**12)

    with pytest.raises(ClaimsInvalidError) as exc_info:
        _verifier().verify(token, key_set)
    assert exc_info.value.claim == "exp"
