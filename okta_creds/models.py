"""Data model shared by the Okta, SAML, STS and cache layers."""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .errors import InvalidTransitionError

DEFAULT_SESSION_DURATION = 3600  # 1 hour

# ---------------------------------------------------------------------------
# Okta
# ---------------------------------------------------------------------------


@dataclass
class PrimaryCredentials:
    username: str
    password: str = field(repr=False)


class AuthState(enum.IntEnum):
    """States of one authentication attempt, in transition order."""

    START = 0
    PRIMARY_AUTH_SUBMITTED = 1
    MFA_REQUIRED = 2
    MFA_CHALLENGE_SENT = 3
    POLLING = 4
    SESSION_ESTABLISHED = 5
    REJECTED = 6
    TIMED_OUT = 7


TERMINAL_STATES = (AuthState.SESSION_ESTABLISHED, AuthState.REJECTED, AuthState.TIMED_OUT)

FACTOR_LABELS = {
    "token:software:totp": "TOTP Authenticator",
    "push": "Okta Verify Push",
    "sms": "SMS",
    "call": "Voice Call",
    "token:hotp": "HOTP Token",
    "token": "Hardware Token",
    "token:hardware": "Hardware Token",
    "email": "Email",
}

PUSH_FACTOR_TYPES = ("push",)
# Codes the user reads off a device they already hold.
CODE_FACTOR_TYPES = ("token:software:totp", "token:hotp", "token", "token:hardware")
# Codes Okta has to send out before the user can enter them.
SENT_CODE_FACTOR_TYPES = ("sms", "call", "email")
SUPPORTED_FACTOR_TYPES = PUSH_FACTOR_TYPES + CODE_FACTOR_TYPES + SENT_CODE_FACTOR_TYPES


@dataclass
class MfaFactor:
    id: str
    factor_type: str
    verify_url: str
    provider: str = ""
    profile: dict = field(default_factory=dict)

    @classmethod
    def from_okta(cls, data):
        """Build a factor from one entry of Okta's ``_embedded.factors``."""
        links = data.get("_links", {})
        return cls(
            id=data["id"],
            factor_type=data.get("factorType", "unknown"),
            verify_url=links.get("verify", {}).get("href", ""),
            provider=data.get("provider", ""),
            profile=data.get("profile") or {},
        )

    @property
    def is_push(self):
        return self.factor_type in PUSH_FACTOR_TYPES

    @property
    def requires_code(self):
        return self.factor_type in CODE_FACTOR_TYPES + SENT_CODE_FACTOR_TYPES

    @property
    def sends_code(self):
        return self.factor_type in SENT_CODE_FACTOR_TYPES

    @property
    def supported(self):
        return self.factor_type in SUPPORTED_FACTOR_TYPES

    def label(self):
        label = FACTOR_LABELS.get(self.factor_type, self.factor_type)
        if self.provider:
            label = f"{label} ({self.provider})"
        return label


@dataclass
class AuthSession:
    """State of a single authentication attempt against one Okta org."""

    org_url: str
    state: AuthState = AuthState.START
    session_token: Optional[str] = field(default=None, repr=False)
    state_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[str] = None
    factors: List[MfaFactor] = field(default_factory=list)
    factor: Optional[MfaFactor] = None
    poll_url: Optional[str] = None
    cookie_established: bool = False

    def advance(self, new_state):
        """Move to *new_state*; transitions never go backwards."""
        if self.state in TERMINAL_STATES:
            raise InvalidTransitionError(
                f"authentication already finished in state {self.state.name}"
            )
        if new_state < self.state or (new_state == self.state and new_state != AuthState.POLLING):
            raise InvalidTransitionError(
                f"cannot move from {self.state.name} to {new_state.name}"
            )
        self.state = new_state
        return self

    @property
    def established(self):
        return self.state == AuthState.SESSION_ESTABLISHED and bool(self.session_token)


@dataclass
class AppLink:
    app_name: str
    label: str
    link_url: str


# ---------------------------------------------------------------------------
# SAML
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RolePair:
    principal_arn: str
    role_arn: str

    @property
    def account_id(self):
        return self.role_arn.split(":")[4]

    @property
    def role_path(self):
        """The role identifier after ``:role/``, including any IAM path."""
        return self.role_arn.split(":role/", 1)[-1]

    @property
    def role_name(self):
        return self.role_arn.split("/")[-1]

    @property
    def alias(self):
        return f"{self.account_id}:{self.role_name}"


@dataclass
class FederationAssertion:
    raw: str = field(repr=False)
    xml: bytes = field(repr=False)
    roles: List[RolePair] = field(default_factory=list)
    session_duration: int = DEFAULT_SESSION_DURATION


# ---------------------------------------------------------------------------
# AWS
# ---------------------------------------------------------------------------


def _as_utc(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class TemporaryCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: datetime

    def __post_init__(self):
        self.expiration = _as_utc(self.expiration)

    @classmethod
    def from_sts(cls, credentials):
        """Build from the ``Credentials`` dict returned by STS."""
        return cls(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expiration=credentials["Expiration"],
        )

    def valid_at(self, now, margin):
        """True while more than *margin* remains before expiration."""
        return self.expiration - now > margin

    def to_bytes(self):
        return json.dumps(
            {
                "AccessKeyId": self.access_key_id,
                "SecretAccessKey": self.secret_access_key,
                "SessionToken": self.session_token,
                "Expiration": self.expiration.isoformat(),
            },
            sort_keys=True,
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, data):
        payload = json.loads(data.decode("utf-8"))
        payload["Expiration"] = datetime.fromisoformat(payload["Expiration"])
        return cls.from_sts(payload)


@dataclass(frozen=True)
class Profile:
    """A named binding of Okta org, user and AWS role."""

    name: str
    org_url: str
    username: str
    role: Optional[str] = None
    account: Optional[str] = None
    app_url: Optional[str] = None
    application_name: Optional[str] = None
    region: Optional[str] = None
    duration_seconds: Optional[int] = None

    @property
    def storage_key(self):
        return f"okta-creds:{self.name}"
