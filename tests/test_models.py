"""Tests for the shared data model."""
from datetime import datetime, timedelta, timezone

import pytest

from okta_creds.errors import InvalidTransitionError
from okta_creds.models import (
    AuthSession,
    AuthState,
    MfaFactor,
    PrimaryCredentials,
    RolePair,
    TemporaryCredentials,
)

from conftest import ADMIN_1, DEV_1, NOW, ORG, PRINCIPAL_1, make_credentials


class TestAuthSession:

    def test_forward_transitions(self):
        session = AuthSession(org_url=ORG)

        session.advance(AuthState.PRIMARY_AUTH_SUBMITTED)
        session.advance(AuthState.MFA_REQUIRED)
        session.advance(AuthState.MFA_CHALLENGE_SENT)
        session.advance(AuthState.POLLING)
        session.advance(AuthState.POLLING)
        session.advance(AuthState.SESSION_ESTABLISHED)

        assert session.state is AuthState.SESSION_ESTABLISHED

    def test_skipping_ahead_is_allowed(self):
        session = AuthSession(org_url=ORG)
        session.advance(AuthState.PRIMARY_AUTH_SUBMITTED)

        session.advance(AuthState.SESSION_ESTABLISHED)

        assert session.state is AuthState.SESSION_ESTABLISHED

    def test_backwards_is_rejected(self):
        session = AuthSession(org_url=ORG, state=AuthState.POLLING)

        with pytest.raises(InvalidTransitionError):
            session.advance(AuthState.MFA_REQUIRED)

    def test_repeating_a_state_is_rejected(self):
        session = AuthSession(org_url=ORG, state=AuthState.MFA_REQUIRED)

        with pytest.raises(InvalidTransitionError):
            session.advance(AuthState.MFA_REQUIRED)

    @pytest.mark.parametrize("terminal", [
        AuthState.SESSION_ESTABLISHED, AuthState.REJECTED, AuthState.TIMED_OUT,
    ])
    def test_terminal_states_are_final(self, terminal):
        session = AuthSession(org_url=ORG, state=terminal)

        with pytest.raises(InvalidTransitionError, match="already finished"):
            session.advance(AuthState.TIMED_OUT)

    def test_established_needs_token(self):
        session = AuthSession(org_url=ORG, state=AuthState.SESSION_ESTABLISHED)
        assert not session.established

        session.session_token = "session-123"
        assert session.established

    def test_repr_hides_tokens(self):
        session = AuthSession(org_url=ORG, session_token="session-123", state_token="state-456")

        assert "session-123" not in repr(session)
        assert "state-456" not in repr(session)


def test_primary_credentials_repr_hides_password():
    assert "hunter2" not in repr(PrimaryCredentials("jdoe", "hunter2"))


class TestMfaFactor:

    def test_from_okta(self):
        factor = MfaFactor.from_okta({
            "id": "opf1",
            "factorType": "push",
            "provider": "OKTA",
            "profile": {"name": "iPhone"},
            "_links": {"verify": {"href": f"{ORG}/api/v1/authn/factors/opf1/verify"}},
        })

        assert factor.verify_url == f"{ORG}/api/v1/authn/factors/opf1/verify"
        assert factor.is_push
        assert not factor.requires_code
        assert factor.label() == "Okta Verify Push (OKTA)"

    @pytest.mark.parametrize("factor_type, requires_code, sends_code", [
        ("token:software:totp", True, False),
        ("sms", True, True),
        ("email", True, True),
        ("push", False, False),
    ])
    def test_kinds(self, factor_type, requires_code, sends_code):
        factor = MfaFactor(id="f", factor_type=factor_type, verify_url="")

        assert factor.supported
        assert factor.requires_code is requires_code
        assert factor.sends_code is sends_code

    def test_unknown_type(self):
        factor = MfaFactor.from_okta({"id": "f", "factorType": "webauthn"})

        assert not factor.supported
        assert factor.label() == "webauthn"


class TestRolePair:

    def test_properties(self):
        role = RolePair(principal_arn=PRINCIPAL_1, role_arn=DEV_1)

        assert role.account_id == "111111111111"
        assert role.role_path == "team/Developer"
        assert role.role_name == "Developer"
        assert role.alias == "111111111111:Developer"

    def test_hashable(self):
        assert len({RolePair(PRINCIPAL_1, ADMIN_1), RolePair(PRINCIPAL_1, ADMIN_1)}) == 1


class TestTemporaryCredentials:

    def test_naive_expiration_is_utc(self):
        credentials = make_credentials(expiration=datetime(2026, 1, 1, 13, 0, 0))

        assert credentials.expiration == NOW + timedelta(hours=1)
        assert credentials.expiration.tzinfo is timezone.utc

    def test_offset_expiration_is_converted(self):
        offset = timezone(timedelta(hours=2))
        credentials = make_credentials(expiration=datetime(2026, 1, 1, 15, 0, 0, tzinfo=offset))

        assert credentials.expiration == NOW + timedelta(hours=1)
        assert credentials.expiration.utcoffset() == timedelta(0)

    def test_valid_at(self):
        credentials = make_credentials()
        margin = timedelta(minutes=5)

        assert credentials.valid_at(NOW, margin)
        assert not credentials.valid_at(NOW + timedelta(minutes=55), margin)

    def test_serialization(self):
        credentials = make_credentials()

        assert TemporaryCredentials.from_bytes(credentials.to_bytes()) == credentials

    def test_repr_hides_secrets(self):
        text = repr(make_credentials())

        assert "ASIAEXAMPLE" in text
        assert "secret" not in text
        assert "session-token" not in text
