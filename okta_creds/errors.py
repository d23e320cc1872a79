"""Error taxonomy for the credential broker.

Every error carries the pipeline ``stage`` it was raised from and a
human-readable ``reason``.  The broker attaches the ``profile`` name before
reporting.  Messages must never contain passwords, tokens or keys.
"""

import enum


class Stage(enum.Enum):
    AUTHENTICATE = "authenticate"
    MFA = "mfa"
    ASSERTION = "assertion"
    ROLES = "roles"
    RESOLVE = "resolve"
    EXCHANGE = "exchange"
    CACHE = "cache"
    CONFIG = "config"


class OktaCredsError(Exception):
    """Base class for all broker failures."""

    stage = None

    def __init__(self, reason, stage=None, profile=None):
        super().__init__(reason)
        self.reason = reason
        if stage is not None:
            self.stage = stage
        self.profile = profile

    def describe(self):
        """Return the per-profile report line: ``profile: stage failed: reason``."""
        stage = self.stage.value if self.stage else "run"
        if self.profile:
            return f"{self.profile}: {stage} failed: {self.reason}"
        return f"{stage} failed: {self.reason}"


class ConfigurationError(OktaCredsError):
    stage = Stage.CONFIG


class InvalidTransitionError(OktaCredsError):
    stage = Stage.AUTHENTICATE


class NetworkError(OktaCredsError):
    """A transport-level failure (connection refused, timeout, bad status)."""

    stage = Stage.AUTHENTICATE


class AuthenticationError(OktaCredsError):
    stage = Stage.AUTHENTICATE


class MfaError(OktaCredsError):
    stage = Stage.MFA


class NoFactorsEnrolledError(MfaError):
    pass


class UnsupportedFactorError(MfaError):
    pass


class MfaRejectedError(MfaError):
    pass


class MfaTimeoutError(MfaError):
    pass


class AssertionNotFoundError(OktaCredsError):
    stage = Stage.ASSERTION


class NoRolesGrantedError(OktaCredsError):
    stage = Stage.ROLES


class RoleResolutionError(OktaCredsError):
    stage = Stage.RESOLVE

    def __init__(self, reason, requested=None, candidates=()):
        super().__init__(reason)
        self.requested = requested
        self.candidates = list(candidates)


class RoleNotFoundError(RoleResolutionError):
    pass


class AmbiguousRoleError(RoleResolutionError):
    pass


class ExchangeRejectedError(OktaCredsError):
    stage = Stage.EXCHANGE


class StorageError(OktaCredsError):
    stage = Stage.CACHE


class RunTimeoutError(OktaCredsError):
    pass
