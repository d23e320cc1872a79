"""Tests for SAML assertion retrieval and role extraction."""
import base64

import pytest

from okta_creds.errors import AssertionNotFoundError, NetworkError, NoRolesGrantedError
from okta_creds.models import AuthSession, AuthState, FederationAssertion
from okta_creds.saml import (
    extract_roles,
    extract_saml_form,
    extract_session_duration,
    fetch_assertion,
    parse_assertion,
    parse_role_value,
)

from conftest import (
    ADMIN_1,
    ADMIN_2,
    APP_URL,
    DEV_1,
    ORG,
    PRINCIPAL_1,
    PRINCIPAL_2,
    FakeResponse,
    FakeTransport,
    make_saml,
    saml_page,
)

REDIRECT = f"{ORG}/login/sessionCookieRedirect"


def established_session():
    session = AuthSession(org_url=ORG, state=AuthState.SESSION_ESTABLISHED)
    session.session_token = "session-123"
    return session


def assertion_for(xml):
    return FederationAssertion(raw=base64.b64encode(xml).decode(), xml=xml)


class TestExtractSamlForm:

    def test_form_found(self):
        value, action = extract_saml_form(saml_page(b"<xml/>"))
        assert base64.b64decode(value) == b"<xml/>"
        assert action == "https://signin.aws.amazon.com/saml"

    def test_form_missing(self):
        assert extract_saml_form("<html><body>Sign in</body></html>") == (None, None)

    def test_garbage_html(self):
        assert extract_saml_form("<<<not html") == (None, None)


class TestFetchAssertion:

    @pytest.mark.asyncio
    async def test_assertion_from_cookie_redirect(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"])
        transport = FakeTransport({("GET", REDIRECT): [FakeResponse(text=saml_page(xml), url=APP_URL)]})
        session = established_session()

        assertion = await fetch_assertion(transport, session, APP_URL)

        assert assertion.xml == xml
        assert session.cookie_established
        params = transport.calls[0][2]["params"]
        assert params["redirectUrl"] == APP_URL
        assert params["token"] == "session-123"

    @pytest.mark.asyncio
    async def test_falls_back_to_app_url(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"])
        transport = FakeTransport({
            ("GET", REDIRECT): [FakeResponse(text="<html>interstitial</html>")],
            ("GET", APP_URL): [FakeResponse(text=saml_page(xml), url=APP_URL)],
        })

        assertion = await fetch_assertion(transport, established_session(), APP_URL)

        assert assertion.xml == xml
        assert [c[1] for c in transport.calls] == [REDIRECT, APP_URL]

    @pytest.mark.asyncio
    async def test_existing_cookie_goes_straight_to_app(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"])
        transport = FakeTransport({("GET", APP_URL): [FakeResponse(text=saml_page(xml))]})
        session = established_session()
        session.cookie_established = True

        await fetch_assertion(transport, session, APP_URL)

        assert [c[1] for c in transport.calls] == [APP_URL]

    @pytest.mark.asyncio
    async def test_missing_field_is_not_retried_further(self):
        transport = FakeTransport({
            ("GET", REDIRECT): [FakeResponse(text="<html>login</html>")],
            ("GET", APP_URL): [FakeResponse(text="<html>no access</html>")],
        })

        with pytest.raises(AssertionNotFoundError, match="SAMLResponse"):
            await fetch_assertion(transport, established_session(), APP_URL)
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_base64(self):
        page = '<form><input name="SAMLResponse" value="not*base64!"/></form>'
        transport = FakeTransport({("GET", REDIRECT): [FakeResponse(text=page)]})

        with pytest.raises(AssertionNotFoundError, match="base64"):
            await fetch_assertion(transport, established_session(), APP_URL)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 404])
    async def test_no_access_to_app(self, status):
        transport = FakeTransport({("GET", APP_URL): [FakeResponse(status, url=APP_URL)]})
        session = established_session()
        session.cookie_established = True

        with pytest.raises(AssertionNotFoundError, match=f"HTTP {status}"):
            await fetch_assertion(transport, session, APP_URL)

    @pytest.mark.asyncio
    async def test_server_error_is_a_network_error(self):
        transport = FakeTransport({("GET", REDIRECT): [FakeResponse(502, url=APP_URL)]})

        with pytest.raises(NetworkError, match="HTTP 502"):
            await fetch_assertion(transport, established_session(), APP_URL)

    @pytest.mark.asyncio
    async def test_requires_established_session(self):
        session = AuthSession(org_url=ORG, state=AuthState.MFA_REQUIRED)

        with pytest.raises(AssertionNotFoundError):
            await fetch_assertion(FakeTransport(), session, APP_URL)


class TestParseRoleValue:

    def test_principal_first(self):
        role = parse_role_value(f"{PRINCIPAL_1},{ADMIN_1}")
        assert role.role_arn == ADMIN_1
        assert role.principal_arn == PRINCIPAL_1

    def test_role_first(self):
        role = parse_role_value(f"{ADMIN_1}, {PRINCIPAL_1}")
        assert role.role_arn == ADMIN_1
        assert role.principal_arn == PRINCIPAL_1
        assert role.account_id == "111111111111"
        assert role.role_name == "Admin"

    @pytest.mark.parametrize("value", [
        PRINCIPAL_1,
        f"{PRINCIPAL_1},{ADMIN_1},{ADMIN_2}",
        f"{PRINCIPAL_1},{PRINCIPAL_2}",
        "arn:aws:iam::123456789012:saml-provider/okta-idp,role/Admin",
    ])
    def test_malformed(self, value):
        assert parse_role_value(value) is None


class TestExtractRoles:

    def test_document_order(self):
        xml = make_saml([
            f"{PRINCIPAL_2},{ADMIN_2}",
            f"{DEV_1},{PRINCIPAL_1}",
            f"{PRINCIPAL_1},{ADMIN_1}",
        ])

        roles = extract_roles(assertion_for(xml))

        assert [r.role_arn for r in roles] == [ADMIN_2, DEV_1, ADMIN_1]
        assert roles[1].role_path == "team/Developer"

    def test_duplicates_dropped(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}", f"{ADMIN_1},{PRINCIPAL_1}"])
        assert len(extract_roles(assertion_for(xml))) == 1

    def test_zero_roles(self):
        with pytest.raises(NoRolesGrantedError):
            extract_roles(assertion_for(make_saml([])))

    def test_only_malformed_roles(self):
        xml = make_saml(["arn:aws:iam::123456789012:saml-provider/okta-idp"])
        with pytest.raises(NoRolesGrantedError):
            extract_roles(assertion_for(xml))

    def test_malformed_xml(self):
        with pytest.raises(NoRolesGrantedError, match="well-formed"):
            extract_roles(assertion_for(b"<saml2:Assertion><unclosed>"))

    def test_external_entities_are_not_resolved(self, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("arn:aws:iam::999999999999:saml-provider/x,arn:aws:iam::999999999999:role/Stolen")
        xml = (
            f'<?xml version="1.0"?><!DOCTYPE r [<!ENTITY xxe SYSTEM "file://{secret}">]>'
            '<saml2:Assertion xmlns:saml2="urn:oasis:names:tc:SAML:2.0:assertion">'
            '<saml2:Attribute Name="https://aws.amazon.com/SAML/Attributes/Role">'
            "<saml2:AttributeValue>&xxe;</saml2:AttributeValue>"
            "</saml2:Attribute></saml2:Assertion>"
        ).encode()

        with pytest.raises(NoRolesGrantedError):
            extract_roles(assertion_for(xml))


class TestSessionDuration:

    def test_from_attribute(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"], session_duration=7200)
        assert extract_session_duration(assertion_for(xml)) == 7200

    def test_default(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"])
        assert extract_session_duration(assertion_for(xml)) == 3600

    def test_invalid_value_ignored(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"], session_duration="forever")
        assert extract_session_duration(assertion_for(xml)) == 3600

    def test_parse_assertion(self):
        xml = make_saml([f"{PRINCIPAL_1},{ADMIN_1}"], session_duration=1800)
        assertion = parse_assertion(assertion_for(xml))
        assert assertion.session_duration == 1800
        assert [r.alias for r in assertion.roles] == ["111111111111:Admin"]
