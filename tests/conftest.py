"""Shared pytest fixtures for okta-creds tests."""
import base64
import logging
from datetime import datetime, timedelta, timezone

import pytest
import requests

from okta_creds.config import Settings
from okta_creds.models import Profile, TemporaryCredentials

ORG = "https://corp.okta.com"
APP_URL = f"{ORG}/home/amazon_aws/0oa1abcd/272"
NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

PRINCIPAL_1 = "arn:aws:iam::111111111111:saml-provider/okta-idp"
PRINCIPAL_2 = "arn:aws:iam::222222222222:saml-provider/okta-idp"
ADMIN_1 = "arn:aws:iam::111111111111:role/Admin"
ADMIN_2 = "arn:aws:iam::222222222222:role/Admin"
DEV_1 = "arn:aws:iam::111111111111:role/team/Developer"


# =============================================================================
# Fake HTTP
# =============================================================================

class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text="", url=ORG):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.url = url

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeTransport:
    """Scripted stand-in for HttpTransport.

    *routes* maps ``(method, url)`` to a list of responses served in order;
    the last one repeats.  Exception instances in the list are raised.
    """

    def __init__(self, routes=None):
        self.routes = {key: list(value) for key, value in (routes or {}).items()}
        self.calls = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def close(self):
        self.closed = True

    def _respond(self, method, url, **details):
        self.calls.append((method, url, details))
        queue = self.routes.get((method, url))
        if not queue:
            return FakeResponse(404, {"errorSummary": "Not found"}, url=url)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def get(self, url, params=None, stage=None, **kwargs):
        return self._respond("GET", url, params=params)

    async def post_json(self, url, payload, stage=None):
        return self._respond("POST", url, payload=payload)

    def posts_to(self, url):
        return [c for c in self.calls if c[0] == "POST" and c[1] == url]


def okta_json(data, status_code=200):
    return FakeResponse(status_code, data)


# =============================================================================
# SAML documents
# =============================================================================

def make_saml(role_values, session_duration=None):
    values = "".join(
        f"<saml2:AttributeValue>{value}</saml2:AttributeValue>" for value in role_values
    )
    duration = ""
    if session_duration is not None:
        duration = (
            '<saml2:Attribute Name="https://aws.amazon.com/SAML/Attributes/SessionDuration">'
            f"<saml2:AttributeValue>{session_duration}</saml2:AttributeValue>"
            "</saml2:Attribute>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<saml2p:Response xmlns:saml2p="urn:oasis:names:tc:SAML:2.0:protocol">'
        '<saml2:Assertion xmlns:saml2="urn:oasis:names:tc:SAML:2.0:assertion">'
        "<saml2:AttributeStatement>"
        '<saml2:Attribute Name="https://aws.amazon.com/SAML/Attributes/Role">'
        f"{values}"
        "</saml2:Attribute>"
        f"{duration}"
        "</saml2:AttributeStatement>"
        "</saml2:Assertion>"
        "</saml2p:Response>"
    ).encode("utf-8")


def saml_page(xml, action="https://signin.aws.amazon.com/saml"):
    encoded = base64.b64encode(xml).decode("ascii")
    return (
        "<html><body>"
        f'<form id="appForm" method="POST" action="{action}">'
        f'<input name="SAMLResponse" type="hidden" value="{encoded}"/>'
        '<input name="RelayState" type="hidden" value=""/>'
        "</form></body></html>"
    )


# =============================================================================
# Fixtures
# =============================================================================

class MemoryStorage:
    def __init__(self):
        self.data = {}
        self.reads = 0

    def read(self, key):
        self.reads += 1
        return self.data.get(key)

    def write(self, key, data):
        self.data[key] = data

    def delete(self, key):
        self.data.pop(key, None)


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)

    @property
    def elapsed(self):
        return sum(self.calls)


@pytest.fixture
def settings():
    return Settings(poll_interval=2, poll_max_attempts=5, poll_network_retries=2, safety_margin=300)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def profile():
    return Profile(
        name="dev",
        org_url=ORG,
        username="jdoe",
        role="Admin",
        account="111111111111",
        app_url=APP_URL,
    )


def make_credentials(expiration=None, suffix=""):
    return TemporaryCredentials(
        access_key_id=f"ASIAEXAMPLE{suffix}",
        secret_access_key=f"secret{suffix}",
        session_token=f"session-token{suffix}",
        expiration=expiration or NOW + timedelta(hours=1),
    )


@pytest.fixture(autouse=True)
def _reset_okta_creds_logger():
    yield
    logger = logging.getLogger("okta_creds")
    logger.handlers[:] = []
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    for name in ("urllib3", "botocore", "boto3", "s3transfer"):
        logging.getLogger(name).setLevel(logging.NOTSET)
