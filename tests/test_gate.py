"""End-to-end checks of the per-request access gate."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from bastion.service.audit import EventType
from bastion.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    UnknownPermissionError,
)
from bastion.service.gate import RequestInfo, extract_bearer
from bastion.service.lockout import LimitPolicy
from bastion.service.mfa import generate_totp

STRONG_PASSWORD = "Str0ng-Passw0rd!"


@pytest.fixture
def user(make_principal):
    return make_principal("gate@example.com", role="developer")


async def bearer_for(runtime, principal):
    result = await runtime.auth.login(principal.email, STRONG_PASSWORD)
    return f"Bearer {result.tokens.access_token}", result


def request(authorization=None, **kwargs):
    kwargs.setdefault("ip_address", "10.0.0.1")
    kwargs.setdefault("path", "/v1/resource")
    return RequestInfo(authorization=authorization, **kwargs)


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_header_parsing(self, header, expected):
        assert extract_bearer(header) == expected


class TestAuthentication:
    async def test_missing_bearer(self, runtime):
        decision = await runtime.gate.evaluate(request())

        assert decision.status_code == 401
        assert decision.detail["reason"] == "missing"
        with pytest.raises(AuthenticationError):
            decision.raise_for_status()

    async def test_valid_bearer_yields_context(self, runtime, user):
        auth, login = await bearer_for(runtime, user)

        decision = await runtime.gate.evaluate(request(auth))

        context = decision.raise_for_status()
        assert context.user_id == user.id
        assert context.session.token == login.session.token
        assert context.role == "developer"

    async def test_expired_token(self, runtime, user, clock):
        auth, _ = await bearer_for(runtime, user)
        clock.advance(minutes=runtime.settings.access_token_ttl_minutes)

        decision = await runtime.gate.evaluate(request(auth))

        assert decision.status_code == 401
        assert decision.detail["reason"] == "expired"
        assert decision.error["message"] == "token expired"

    async def test_garbage_token_is_audited(self, runtime):
        decision = await runtime.gate.evaluate(request("Bearer not.a.token"))

        assert decision.detail["reason"] == "malformed"
        event = runtime.audit_log.security_events(event_type=EventType.AUTHENTICATION_FAILED)[0]
        assert event.metadata["path"] == "/v1/resource"

    async def test_revoked_session_rejects_valid_token(self, runtime, user):
        auth, login = await bearer_for(runtime, user)
        await runtime.auth.logout(login.session)

        decision = await runtime.gate.evaluate(request(auth))

        assert decision.status_code == 401
        assert decision.detail["reason"] == "session_revoked"

    async def test_locked_principal_rejected(self, runtime, user, clock):
        auth, _ = await bearer_for(runtime, user)
        runtime.store.update_principal(user.id, locked_until=clock.now + timedelta(minutes=1))

        decision = await runtime.gate.evaluate(request(auth))

        assert decision.status_code == 401
        assert decision.detail["reason"] == "principal_locked"

    async def test_touch_records_activity(self, runtime, user, clock):
        auth, login = await bearer_for(runtime, user)
        clock.advance(minutes=2)

        await runtime.gate.evaluate(request(auth))

        assert runtime.store.get_session(login.session.token).last_activity_at == clock.now


class TestAuthorization:
    async def test_permission_granted(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)

        decision = await runtime.gate.evaluate(request(auth), permission="upload_asset")

        assert decision.allowed

    async def test_permission_denied_is_audited(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)

        decision = await runtime.gate.evaluate(
            request(auth), permission="manage_system", project_id="proj-1"
        )

        assert decision.status_code == 403
        with pytest.raises(ForbiddenError):
            decision.raise_for_status()
        event = runtime.audit_log.security_events(event_type=EventType.AUTHORIZATION_DENIED)[0]
        assert event.actor_id == user.id
        assert event.metadata == {
            "permission": "manage_system",
            "project_id": "proj-1",
            "path": "/v1/resource",
        }

    async def test_project_scope_is_honoured(self, runtime, make_principal):
        member = make_principal("member@example.com")
        role = runtime.rbac.role_for_name("project_admin")
        await runtime.rbac.assign_role_to_user(member.id, role.id, "proj-1")
        auth, _ = await bearer_for(runtime, member)

        inside = await runtime.gate.evaluate(
            request(auth), permission="edit_project", project_id="proj-1"
        )
        outside = await runtime.gate.evaluate(
            request(auth), permission="edit_project", project_id="proj-2"
        )

        assert inside.allowed
        assert outside.status_code == 403

    async def test_unknown_permission_propagates(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)

        with pytest.raises(UnknownPermissionError):
            await runtime.gate.evaluate(request(auth), permission="launch_rockets")

    async def test_internal_error_after_authentication_is_forbidden(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)
        runtime.gate.rbac = MagicMock()
        runtime.gate.rbac.user_has_permission.side_effect = RuntimeError("boom")

        decision = await runtime.gate.evaluate(request(auth), permission="upload_asset")

        assert decision.status_code == 403
        assert decision.error["message"] == "access denied"
        event = runtime.audit_log.security_events(event_type=EventType.STORE_FAILURE)[0]
        assert event.metadata["stage"] == "authorization"

    async def test_internal_error_before_authentication_is_unauthorized(self, runtime):
        runtime.gate.tokens = MagicMock()
        runtime.gate.tokens.verify.side_effect = RuntimeError("boom")

        decision = await runtime.gate.evaluate(request("Bearer x.y.z"))

        assert decision.status_code == 401
        assert decision.error["message"] == "authentication failed"


class TestRateLimitsAndMfa:
    async def test_sensitive_operation_budget(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)
        limit = runtime.settings.sensitive_max_attempts
        for _ in range(limit):
            assert (await runtime.gate.evaluate(request(auth), sensitive=True)).allowed

        decision = await runtime.gate.evaluate(request(auth), sensitive=True)

        assert decision.status_code == 429
        assert decision.retry_after > 0
        with pytest.raises(RateLimitedError):
            decision.raise_for_status()
        event = runtime.audit_log.security_events(event_type=EventType.RATE_LIMIT_EXCEEDED)[0]
        assert event.severity.value == "HIGH"

    async def test_sensitive_budget_is_per_path(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)
        for _ in range(runtime.settings.sensitive_max_attempts):
            await runtime.gate.evaluate(request(auth, path="/v1/a"), sensitive=True)

        decision = await runtime.gate.evaluate(request(auth, path="/v1/b"), sensitive=True)

        assert decision.allowed

    async def test_general_budget_per_ip(self, runtime, user):
        runtime.guard.policies["general"] = LimitPolicy("general", 2, 60, fail_closed=False)
        auth, _ = await bearer_for(runtime, user)
        await runtime.gate.evaluate(request(auth))
        await runtime.gate.evaluate(request(auth))

        decision = await runtime.gate.evaluate(request(auth))
        other_ip = await runtime.gate.evaluate(request(auth, ip_address="10.9.9.9"))

        assert decision.status_code == 429
        assert other_ip.allowed

    async def test_mfa_header_required_when_enrolled(self, runtime, user, clock):
        setup = await runtime.mfa.generate_secret(user.id)
        await runtime.mfa.confirm(user.id, generate_totp(setup.secret, clock.now.timestamp()))
        code = generate_totp(setup.secret, clock.now.timestamp())
        result = await runtime.auth.login(user.email, STRONG_PASSWORD, code)
        auth = f"Bearer {result.tokens.access_token}"

        missing = await runtime.gate.evaluate(request(auth), require_mfa=True)
        wrong = await runtime.gate.evaluate(request(auth, mfa_code="000000"), require_mfa=True)
        right = await runtime.gate.evaluate(request(auth, mfa_code=code), require_mfa=True)

        assert missing.status_code == 401
        assert missing.error["message"] == "mfa code required"
        assert wrong.status_code == 401
        assert right.allowed
        assert len(runtime.audit_log.security_events(event_type=EventType.MFA_FAILED)) == 2

    async def test_mfa_not_demanded_without_enrollment(self, runtime, user):
        auth, _ = await bearer_for(runtime, user)

        decision = await runtime.gate.evaluate(request(auth), require_mfa=True)

        assert decision.allowed
