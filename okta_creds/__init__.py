"""Temporary AWS credentials from Okta SAML, cached per profile."""

from .broker import Broker, RefreshResult
from .cache import CredentialCache
from .config import Settings
from .errors import OktaCredsError, Stage
from .models import Profile, RolePair, TemporaryCredentials

__version__ = "0.1.0"

__all__ = [
    "Broker",
    "CredentialCache",
    "OktaCredsError",
    "Profile",
    "RefreshResult",
    "RolePair",
    "Settings",
    "Stage",
    "TemporaryCredentials",
]
