import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from hostpanel.service import totp as totp_module
from hostpanel.service.errors import (
    BadRequestError,
    ConflictError,
    InvalidCode,
    InvalidCredential,
)
from hostpanel.service.totp import (
    generate_code,
    generate_secret,
    provisioning_uri,
    verify_code,
)

# RFC 6238 appendix B test secret ("12345678901234567890"), SHA1 variant
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


def _at(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@pytest.mark.parametrize(
    "timestamp,expected",
    [
        (59, "287082"),
        (1111111109, "081804"),
        (1234567890, "005924"),
        (2000000000, "279037"),
    ],
)
def test_generate_code_matches_rfc_vectors(timestamp, expected):
    assert generate_code(RFC_SECRET, _at(timestamp)) == expected


def test_generate_secret_is_base32():
    secret = generate_secret()
    assert len(secret) == 32
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    assert len(base64.b32decode(padded)) == 20
    assert generate_secret() != secret


def test_verify_accepts_adjacent_steps_only():
    now = _at(1234567890)
    previous = generate_code(RFC_SECRET, now - timedelta(seconds=30))
    following = generate_code(RFC_SECRET, now + timedelta(seconds=30))
    stale = generate_code(RFC_SECRET, now - timedelta(seconds=90))

    assert verify_code(RFC_SECRET, generate_code(RFC_SECRET, now), now)
    assert verify_code(RFC_SECRET, previous, now)
    assert verify_code(RFC_SECRET, following, now)
    assert not verify_code(RFC_SECRET, stale, now)
    assert not verify_code(RFC_SECRET, previous, now, window=0)


# Unicode digits pass str.isdigit() but are not valid codes
ARABIC_INDIC_DIGITS = "\u0661\u0662\u0663\u0664\u0665\u0666"
SUPERSCRIPT_DIGITS = "\u00b9\u00b2\u00b3\u2074\u2075\u2076"


@pytest.mark.parametrize(
    "code",
    ["", "12345", "1234567", "abcdef", None, ARABIC_INDIC_DIGITS, SUPERSCRIPT_DIGITS],
)
def test_verify_rejects_malformed_codes(code):
    assert not verify_code(RFC_SECRET, code, _at(59))


async def test_non_ascii_digits_are_invalid_codes(services):
    account = await _register(services)
    enrollment = services.two_factor.begin_enrollment(account.id)
    with pytest.raises(InvalidCode):
        services.two_factor.confirm_enrollment(account.id, ARABIC_INDIC_DIGITS)

    services.two_factor.confirm_enrollment(
        account.id, generate_code(enrollment.secret, services.clock())
    )
    for code in (ARABIC_INDIC_DIGITS, SUPERSCRIPT_DIGITS):
        with pytest.raises(InvalidCode):
            services.two_factor.verify_login(account.id, code)


def test_verify_rejects_invalid_secret():
    assert not verify_code("not base32 !!", "123456", _at(59))


def test_provisioning_uri_fields():
    uri = provisioning_uri("JBSWY3DPEHPK3PXP", "alice", "Cloud Panel")
    parsed = urlparse(uri)
    assert parsed.scheme == "otpauth"
    assert parsed.netloc == "totp"
    assert parsed.path == "/Cloud%20Panel:alice"
    query = parse_qs(parsed.query)
    assert query == {
        "secret": ["JBSWY3DPEHPK3PXP"],
        "issuer": ["Cloud Panel"],
        "algorithm": ["SHA1"],
        "digits": ["6"],
        "period": ["30"],
    }


async def _register(services, username="alice", email="alice@example.com"):
    return await services.accounts.create_account(username, email, "secret1")


async def test_enrollment_requires_confirmation(services):
    account = await _register(services)
    enrollment = services.two_factor.begin_enrollment(account.id)
    assert enrollment.provisioning_uri.startswith("otpauth://totp/")

    stored = services.store.get_account(account.id)
    assert stored.two_factor_secret == enrollment.secret
    assert stored.two_factor_enabled is False
    status = services.two_factor.status(account.id)
    assert status.pending and not status.enabled

    with pytest.raises(InvalidCode):
        services.two_factor.confirm_enrollment(account.id, "000000")
    # A failed confirmation keeps the pending secret for another try
    assert services.store.get_account(account.id).two_factor_secret == enrollment.secret

    code = generate_code(enrollment.secret, services.clock())
    confirmed = services.two_factor.confirm_enrollment(account.id, code)
    assert confirmed.two_factor_enabled is True
    assert services.two_factor.status(account.id).enabled


async def test_restarting_enrollment_replaces_pending_secret(services, monkeypatch):
    issued = iter([RFC_SECRET, "JBSWY3DPEHPK3PXP"])
    monkeypatch.setattr(totp_module, "generate_secret", lambda: next(issued))
    # Counter 5 for the RFC secret; its window codes are known from RFC 4226
    services.clock.now = _at(165)
    account = await _register(services)

    first = services.two_factor.begin_enrollment(account.id)
    second = services.two_factor.begin_enrollment(account.id)
    assert first.secret == RFC_SECRET
    assert second.secret == "JBSWY3DPEHPK3PXP"

    old_code = generate_code(first.secret, services.clock())
    assert old_code == "254676"
    new_code = generate_code(second.secret, services.clock())
    assert not verify_code(second.secret, old_code, services.clock())

    with pytest.raises(InvalidCode):
        services.two_factor.confirm_enrollment(account.id, old_code)
    assert services.two_factor.confirm_enrollment(account.id, new_code).two_factor_enabled


async def test_enrollment_conflicts_when_already_enabled(services):
    account = await _register(services)
    enrollment = services.two_factor.begin_enrollment(account.id)
    services.two_factor.confirm_enrollment(
        account.id, generate_code(enrollment.secret, services.clock())
    )
    with pytest.raises(ConflictError):
        services.two_factor.begin_enrollment(account.id)
    with pytest.raises(ConflictError):
        services.two_factor.confirm_enrollment(account.id, "123456")


async def test_confirm_without_enrollment_is_rejected(services):
    account = await _register(services)
    with pytest.raises(BadRequestError):
        services.two_factor.confirm_enrollment(account.id, "123456")


async def test_verify_login_requires_enabled_two_factor(services):
    account = await _register(services)
    enrollment = services.two_factor.begin_enrollment(account.id)
    code = generate_code(enrollment.secret, services.clock())
    # Pending secrets cannot be used to log in
    with pytest.raises(InvalidCode):
        services.two_factor.verify_login(account.id, code)

    services.two_factor.confirm_enrollment(account.id, code)
    services.clock.advance(seconds=30)
    fresh = generate_code(enrollment.secret, services.clock())
    assert services.two_factor.verify_login(account.id, fresh).id == account.id
    with pytest.raises(InvalidCode):
        services.two_factor.verify_login(account.id, "999999" if fresh != "999999" else "000000")


async def test_disable_requires_password(services):
    account = await _register(services)
    enrollment = services.two_factor.begin_enrollment(account.id)
    services.two_factor.confirm_enrollment(
        account.id, generate_code(enrollment.secret, services.clock())
    )

    with pytest.raises(InvalidCredential):
        await services.two_factor.disable(account.id, "wrong-password")
    assert services.store.get_account(account.id).two_factor_enabled

    disabled = await services.two_factor.disable(account.id, "secret1")
    assert disabled.two_factor_enabled is False
    assert disabled.two_factor_secret is None

    # Disabling again is a no-op but still checks the password
    again = await services.two_factor.disable(account.id, "secret1")
    assert again.version == disabled.version
    with pytest.raises(InvalidCredential):
        await services.two_factor.disable(account.id, "wrong-password")
