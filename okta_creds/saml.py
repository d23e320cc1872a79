"""SAML assertion retrieval from the Okta AWS app, and role extraction.

Both the launch page and the decoded assertion are untrusted input.  HTML is
parsed with BeautifulSoup on top of lxml; the assertion XML goes through an
lxml parser that never resolves entities, loads DTDs or touches the network.
Malformed markup maps to :class:`AssertionNotFoundError` or
:class:`NoRolesGrantedError`.  The assertion signature is not checked here;
STS validates it.
"""

import base64
import binascii
import logging

from bs4 import BeautifulSoup
from lxml import etree

from .errors import AssertionNotFoundError, NoRolesGrantedError, Stage
from .http import raise_for_status
from .models import DEFAULT_SESSION_DURATION, FederationAssertion, RolePair

logger = logging.getLogger(__name__)

SAML_ROLE_ATTRIBUTE = "https://aws.amazon.com/SAML/Attributes/Role"
SAML_SESSION_ATTRIBUTE = "https://aws.amazon.com/SAML/Attributes/SessionDuration"
SAML_NS = "{urn:oasis:names:tc:SAML:2.0:assertion}"
NO_ACCESS_STATUSES = (401, 403, 404)

# ---------------------------------------------------------------------------
# SAML assertion retrieval
# ---------------------------------------------------------------------------


async def open_web_session(transport, session, redirect_url):
    """Trade the one-time session token for an Okta session cookie.

    Okta answers ``/login/sessionCookieRedirect`` by setting ``sid`` and
    redirecting to *redirect_url*; the final response is returned.
    """
    logger.debug("Exchanging session token for a session cookie")
    response = await transport.get(
        f"{session.org_url}/login/sessionCookieRedirect",
        params={
            "checkAccountSetupComplete": "true",
            "token": session.session_token,
            "redirectUrl": redirect_url,
        },
        stage=Stage.ASSERTION,
    )
    session.cookie_established = True
    return response


def extract_saml_form(html):
    """Return (saml_assertion, action_url) from an HTML form, or (None, None)."""
    soup = BeautifulSoup(html, "lxml")
    tag = soup.find("input", {"name": "SAMLResponse"})
    if not tag or not tag.get("value"):
        return None, None
    form = tag.find_parent("form")
    action_url = form["action"] if form and form.get("action") else None
    return tag["value"], action_url


def _check_launch_response(response):
    """Raise for a failed app launch; access errors mean the app is not reachable."""
    if response.status_code in NO_ACCESS_STATUSES:
        raise AssertionNotFoundError(
            f"the AWS app launch page returned HTTP {response.status_code}; "
            "check that you are assigned to the app and that app_url is correct"
        )
    raise_for_status(response, stage=Stage.ASSERTION)


async def fetch_assertion(
transport, session, app_url):
    """Retrieve and decode the SAML assertion served by the AWS app launch page.

    Two attempts are made: the first page reached (through the cookie
    redirect when no web session exists yet), then a plain GET of *app_url*
    carrying the cookie.  A missing ``SAMLResponse`` field means the session
    expired or the user is not assigned to the app, so it is not retried
    further.
    """
    if not session.established:
        raise AssertionNotFoundError("no established Okta session to launch the app with")

    if session.cookie_established:
        response = await transport.get(app_url, stage=Stage.ASSERTION)
        attempts_left = 0
    else:
        response = await open_web_session(transport, session, app_url)
        attempts_left = 1
    _check_launch_response(response)
    value, action_url = extract_saml_form(response.text)

    if not value and attempts_left:
        logger.debug("SAMLResponse not found after redirect, requesting the app directly")
        response = await transport.get(app_url, stage=Stage.ASSERTION)
        _check_launch_response(response)
        value, action_url = extract_saml_form(response.text)

    if not value:
        raise AssertionNotFoundError(
            "could not find SAMLResponse in the Okta response; verify that app_url is the "
            "embed link of the AWS SAML app and that you are assigned to it"
        )
    logger.debug("SAML form action URL: %s", action_url)

    raw = "".join(value.split())
    try:
        xml = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise AssertionNotFoundError("SAMLResponse is not valid base64") from None
    return FederationAssertion(raw=raw, xml=xml)


# ---------------------------------------------------------------------------
# SAML parsing
# ---------------------------------------------------------------------------


def _xml_parser():
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        huge_tree=False,
        remove_comments=True,
        remove_pis=True,
    )


def _parse_document(xml):
    try:
        root = etree.fromstring(xml, parser=_xml_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise NoRolesGrantedError(f"SAML assertion is not well-formed XML: {exc}") from None
    if root is None:
        raise NoRolesGrantedError("SAML assertion is empty")
    return root


def _attribute_values(root, name):
    for attr in root.iter(f"{SAML_NS}Attribute"):
        if attr.get("Name", "") != name:
            continue
        for value_el in attr.iter(f"{SAML_NS}AttributeValue"):
            text = (value_el.text or "").strip()
            if text:
                yield text


def parse_role_value(text):
    """Parse a single Role attribute value into a :class:`RolePair`.

    The value is a comma-separated pair of ARNs:
    ``arn:aws:iam::ACCT:saml-provider/P,arn:aws:iam::ACCT:role/R``
    or in reverse order.  Returns None if the value cannot be parsed.
    """
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 2:
        return None

    role_arn = next((p for p in parts if ":role/" in p), None)
    principal_arn = next((p for p in parts if ":saml-provider/" in p), None)

    if not role_arn or not principal_arn or len(role_arn.split(":")) < 6:
        return None
    return RolePair(principal_arn=principal_arn, role_arn=role_arn)


def extract_roles(assertion):
    """Return the role pairs granted by *assertion*, in document order.

    Duplicate pairs are dropped.  Raises :class:`NoRolesGrantedError` when the
    Role attribute is missing or holds no usable pair.
    """
    root = _parse_document(assertion.xml)
    roles = []
    for text in _attribute_values(root, SAML_ROLE_ATTRIBUTE):
        role = parse_role_value(text)
        if role is None:
            logger.warning("Ignoring malformed role attribute value: %s", text)
            continue
        if role not in roles:
            roles.append(role)

    if not roles:
        raise NoRolesGrantedError(
            "no AWS roles found in SAML assertion; ensure the Okta app "
            "is configured to include Role attributes"
        )
    return roles


def extract_session_duration(assertion):
    """Return the SessionDuration attribute in seconds, or the 1 hour default."""
    root = _parse_document(assertion.xml)
    duration = DEFAULT_SESSION_DURATION
    for text in _attribute_values(root, SAML_SESSION_ATTRIBUTE):
        try:
            duration = int(text)
        except ValueError:
            logger.debug("Ignoring invalid SessionDuration %r", text)
    return duration


def parse_assertion(assertion):
    """Fill in the roles and session duration of *assertion*."""
    assertion.roles = extract_roles(assertion)
    assertion.session_duration = extract_session_duration(assertion)
    return assertion
