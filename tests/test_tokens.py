import base64
import json
from datetime import timedelta

import pytest

from hostpanel.service.errors import InvalidToken, TokenExpired
from hostpanel.service.tokens import SessionTokenIssuer, TokenConfig


def _segments(token):
    return token.split(".")


def _decode(segment):
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _encode(obj):
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


def test_issue_and_verify(token_config, clock):
    issuer = SessionTokenIssuer(token_config, clock=clock)
    issued = issuer.issue("acct-1", "alice")
    assert issued.expires_at == clock.now + timedelta(days=7)

    header, payload, _ = _segments(issued.token)
    assert _decode(header) == {"alg": "HS256", "typ": "JWT"}
    claims = _decode(payload)
    assert claims["sub"] == "acct-1"
    assert claims["username"] == "alice"
    assert claims["iss"] == "hostpanel"
    assert claims["aud"] == "hostpanel-clients"
    assert claims["token_type"] == "session"
    assert claims["jti"] == issued.token_id

    verified = issuer.verify(issued.token)
    assert verified.account_id == "acct-1"
    assert verified.username == "alice"
    assert verified.token_id == issued.token_id
    assert verified.issued_at == clock.now
    assert verified.expires_at == issued.expires_at


def test_token_ids_are_unique(token_config, clock):
    issuer = SessionTokenIssuer(token_config, clock=clock)
    assert issuer.issue("acct-1", "alice").token_id != issuer.issue("acct-1", "alice").token_id


def test_expiry_is_enforced(token_config, clock):
    issuer = SessionTokenIssuer(token_config, clock=clock)
    issued = issuer.issue("acct-1", "alice")

    clock.advance(days=7, seconds=-1)
    issuer.verify(issued.token)

    clock.advance(seconds=1)
    with pytest.raises(TokenExpired) as excinfo:
        issuer.verify(issued.token)
    assert excinfo.value.error_code == "token_expired"
    assert excinfo.value.status_code == 401


def test_leeway_extends_acceptance(token_config, clock):
    config = TokenConfig(
        secret=token_config.secret,
        issuer=token_config.issuer,
        audience=token_config.audience,
        ttl=timedelta(minutes=5),
        leeway=timedelta(seconds=30),
    )
    issuer = SessionTokenIssuer(config, clock=clock)
    issued = issuer.issue("acct-1", "alice")
    clock.advance(minutes=5, seconds=29)
    issuer.verify(issued.token)
    clock.advance(seconds=1)
    with pytest.raises(TokenExpired):
        issuer.verify(issued.token)


def test_tampered_payload_is_rejected(token_config, clock):
    issuer = SessionTokenIssuer(token_config, clock=clock)
    header, payload, signature = _segments(issuer.issue("acct-1", "alice").token)
    claims = _decode(payload)
    claims["sub"] = "acct-2"
    with pytest.raises(InvalidToken):
        issuer.verify(f"{header}.{_encode(claims)}.{signature}")


def test_other_secret_is_rejected(token_config, clock):
    issued = SessionTokenIssuer(token_config, clock=clock).issue("acct-1", "alice")
    other = TokenConfig(
        secret="another-secret",
        issuer=token_config.issuer,
        audience=token_config.audience,
        ttl=token_config.ttl,
    )
    with pytest.raises(InvalidToken):
        SessionTokenIssuer(other, clock=clock).verify(issued.token)


def test_wrong_audience_or_issuer_is_rejected(token_config, clock):
    issued = SessionTokenIssuer(token_config, clock=clock).issue("acct-1", "alice")
    for field, value in (("audience", "someone-else"), ("issuer", "elsewhere")):
        config = TokenConfig(
            secret=token_config.secret,
            issuer=value if field == "issuer" else token_config.issuer,
            audience=value if field == "audience" else token_config.audience,
            ttl=token_config.ttl,
        )
        with pytest.raises(InvalidToken):
            SessionTokenIssuer(config, clock=clock).verify(issued.token)


def test_alg_none_is_rejected(token_config, clock):
    issuer = SessionTokenIssuer(token_config, clock=clock)
    _, payload, _ = _segments(issuer.issue("acct-1", "alice").token)
    forged = f"{_encode({'alg': 'none', 'typ': 'JWT'})}.{payload}."
    with pytest.raises(InvalidToken):
        issuer.verify(forged)


@pytest.mark.parametrize(
    "token",
    ["", "abc", "a.b", "a.b.c.d", "!!!.???.***", "eyJ.eyJ.sig"],
)
def test_malformed_tokens_are_invalid(token_config, clock, token):
    with pytest.raises(InvalidToken):
        SessionTokenIssuer(token_config, clock=clock).verify(token)


def test_config_requires_secret_and_positive_ttl():
    with pytest.raises(ValueError):
        TokenConfig(secret="", issuer="i", audience="a", ttl=timedelta(hours=1))
    with pytest.raises(ValueError):
        TokenConfig(secret="s", issuer="i", audience="a", ttl=timedelta(0))
