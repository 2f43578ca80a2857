"""TOTP codes and the MFA enrollment state machine."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from bastion.service.audit import EventType
from bastion.service.errors import ConflictError, NotFoundError
from bastion.service.mfa import MFAState, generate_totp, verify_totp

# RFC 6238 appendix B secret ("12345678901234567890")
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def user(make_principal):
    return make_principal("mfa@example.com")


def current_code(secret, clock, **offset):
    return generate_totp(secret, (clock.now + timedelta(**offset)).timestamp())


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_reference_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_adjacent_steps_accepted(self):
        at = datetime.fromtimestamp(1234567890, tz=timezone.utc)
        previous = generate_totp(RFC_SECRET, 1234567890 - 30)
        following = generate_totp(RFC_SECRET, 1234567890 + 30)

        assert verify_totp(RFC_SECRET, previous, at=at)
        assert verify_totp(RFC_SECRET, following, at=at)

    def test_codes_outside_window_rejected(self):
        at = datetime.fromtimestamp(1234567890, tz=timezone.utc)
        stale = generate_totp(RFC_SECRET, 1234567890 - 90)

        assert not verify_totp(RFC_SECRET, stale, at=at)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_badly_shaped_codes_rejected(self, code):
        at = datetime.fromtimestamp(59, tz=timezone.utc)

        assert not verify_totp(RFC_SECRET, code, at=at)

    def test_spaces_are_ignored(self):
        at = datetime.fromtimestamp(59, tz=timezone.utc)

        assert verify_totp(RFC_SECRET, "287 082", at=at)

    def test_invalid_secret_yields_no_code(self):
        assert generate_totp("not base32!", 59) == ""


class TestEnrollment:
    def test_new_user_is_disabled(self, runtime, user):
        assert runtime.mfa.state(user.id) is MFAState.DISABLED

    async def test_setup_returns_provisioning_uri(self, runtime, user):
        setup = await runtime.mfa.generate_secret(user.id)

        uri = urlparse(setup.otpauth_uri)
        query = parse_qs(uri.query)
        assert uri.scheme == "otpauth"
        assert uri.netloc == "totp"
        assert query["secret"] == [setup.secret]
        assert query["digits"] == ["6"]
        assert query["period"] == ["30"]
        assert "mfa%40example.com" in uri.path or "mfa@example.com" in uri.path
        assert runtime.mfa.state(user.id) is MFAState.SECRET_GENERATED

    async def test_pending_secret_not_on_principal(self, runtime, user):
        await runtime.mfa.generate_secret(user.id)

        stored = runtime.store.get_principal(user.id)
        assert stored.mfa_secret is None
        assert not stored.mfa_enabled

    async def test_wrong_code_keeps_enrollment_pending(self, runtime, user, clock):
        setup = await runtime.mfa.generate_secret(user.id)
        wrong = current_code(setup.secret, clock, minutes=10)

        assert await runtime.mfa.confirm(user.id, wrong) is False

        assert runtime.mfa.state(user.id) is MFAState.SECRET_GENERATED
        assert runtime.audit_log.security_events(
            event_type=EventType.MFA_VERIFICATION_FAILED
        )

    async def test_valid_code_enables(self, runtime, user, clock):
        setup = await runtime.mfa.generate_secret(user.id)

        assert await runtime.mfa.confirm(user.id, current_code(setup.secret, clock))

        assert runtime.mfa.state(user.id) is MFAState.ENABLED
        assert runtime.store.get_mfa_enrollment(user.id) is None
        assert runtime.audit_log.security_events(event_type=EventType.MFA_ENABLED)

    async def test_regenerating_replaces_pending_secret(self, runtime, user, clock):
        first = await runtime.mfa.generate_secret(user.id)
        second = await runtime.mfa.generate_secret(user.id)

        assert first.secret != second.secret
        assert await runtime.mfa.confirm(user.id, current_code(second.secret, clock))

    async def test_confirm_without_setup_conflicts(self, runtime, user):
        with pytest.raises(ConflictError):
            await runtime.mfa.confirm(user.id, "123456")

    async def test_setup_when_enabled_conflicts(self, runtime, user, clock):
        setup = await runtime.mfa.generate_secret(user.id)
        await runtime.mfa.confirm(user.id, current_code(setup.secret, clock))

        with pytest.raises(ConflictError):
            await runtime.mfa.generate_secret(user.id)
        with pytest.raises(ConflictError):
            await runtime.mfa.confirm(user.id, current_code(setup.secret, clock))

    async def test_unknown_user(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.mfa.generate_secret("ghost")


class TestVerifyAndDisable:
    async def _enable(self, runtime, user, clock):
        setup = await runtime.mfa.generate_secret(user.id)
        await runtime.mfa.confirm(user.id, current_code(setup.secret, clock))
        return setup.secret

    async def test_verify_code_against_enabled_secret(self, runtime, user, clock):
        secret = await self._enable(runtime, user, clock)

        assert runtime.mfa.verify_code(user.id, current_code(secret, clock))
        assert runtime.mfa.verify_code(user.id, current_code(secret, clock, seconds=30))
        assert not runtime.mfa.verify_code(user.id, current_code(secret, clock, minutes=5))
        assert not runtime.mfa.verify_code(user.id, None)

    async def test_verify_code_when_disabled(self, runtime, user):
        assert not runtime.mfa.verify_code(user.id, "123456")

    async def test_disable_clears_secret(self, runtime, user, clock):
        await self._enable(runtime, user, clock)

        await runtime.mfa.disable(user.id)

        assert runtime.mfa.state(user.id) is MFAState.DISABLED
        assert runtime.store.get_principal(user.id).mfa_secret is None
        event = runtime.audit_log.security_events(event_type=EventType.MFA_DISABLED)[0]
        assert event.metadata["previous_state"] == "enabled"

    async def test_disable_abandons_pending_setup(self, runtime, user):
        await runtime.mfa.generate_secret(user.id)

        await runtime.mfa.disable(user.id)

        assert runtime.mfa.state(user.id) is MFAState.DISABLED

    async def test_disable_when_disabled_conflicts(self, runtime, user):
        with pytest.raises(ConflictError):
            await runtime.mfa.disable(user.id)
