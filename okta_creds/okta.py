"""Okta authentication: primary auth, MFA challenge and push polling.

The client drives an :class:`~okta_creds.models.AuthSession` through::

    START -> PRIMARY_AUTH_SUBMITTED -> SESSION_ESTABLISHED
                                    -> MFA_REQUIRED -> MFA_CHALLENGE_SENT
                                       -> POLLING -> SESSION_ESTABLISHED

Rejections end in ``REJECTED`` and exhausted polling in ``TIMED_OUT``.
"""

import asyncio
import logging
from urllib.parse import urlsplit

from .config import Settings
from .errors import (
    AuthenticationError,
    MfaError,
    MfaRejectedError,
    MfaTimeoutError,
    NetworkError,
    NoFactorsEnrolledError,
    Stage,
    UnsupportedFactorError,
)
from .http import raise_for_status
from .models import TERMINAL_STATES, AppLink, AuthSession, AuthState, MfaFactor

logger = logging.getLogger(__name__)

AWS_APP_NAME = "amazon_aws"

# Primary-auth statuses that end the run with an explanation for the user.
REJECTED_STATUSES = {
    "LOCKED_OUT": "your account is locked out, please contact your administrator",
    "PASSWORD_EXPIRED": "your password has expired, please reset it in Okta and try again",
    "MFA_ENROLL": "MFA enrollment is required, please enroll a factor in Okta first",
}
MFA_STATUSES = ("MFA_REQUIRED", "MFA_CHALLENGE")

INVALID_CREDENTIALS = "E0000004"
INVALID_PASSCODE = "E0000068"
INVALID_STATE_TOKEN = "E0000011"


def _nested(data, *keys):
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class OktaClient:
    """Talks to the Okta authn API of a single organization."""

    def __init__(self, transport, org_url, settings=None, sleep=asyncio.sleep):
        self.transport = transport
        self.org_url = org_url.rstrip("/")
        self.settings = settings or Settings()
        self.sleep = sleep

    # -----------------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------------

    async def _post(self, url, payload, stage):
        response = await self.transport.post_json(url, payload, stage=stage)
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            if response.status_code >= 400:
                raise self._error_for(response, {}, stage)
            raise self._malformed(response, stage)
        if response.status_code >= 400:
            raise self._error_for(response, body, stage)
        return body

    def _malformed(self, response, stage):
        host = urlsplit(response.url or self.org_url).netloc
        return NetworkError(f"malformed response from {host} (HTTP {response.status_code})", stage=stage)

    def _error_for(self, response, body, stage):
        status = response.status_code
        code = body.get("errorCode", "")
        summary = body.get("errorSummary") or f"HTTP {status}"

        if stage is Stage.AUTHENTICATE:
            if status == 401 or code == INVALID_CREDENTIALS:
                return AuthenticationError(f"invalid username or password ({summary})")
            if status == 429:
                return AuthenticationError("too many requests, please wait and retry")
        else:
            if code == INVALID_PASSCODE or status == 403:
                return MfaRejectedError(summary)
            if code == INVALID_STATE_TOKEN:
                return MfaTimeoutError("the MFA transaction expired before it was verified")

        host = urlsplit(response.url or self.org_url).netloc
        return NetworkError(f"HTTP {status} from {host}: {summary}", stage=stage)

    # -----------------------------------------------------------------------
    # Primary authentication
    # -----------------------------------------------------------------------

    async def submit_primary_auth(self, credentials):
        """Post username and password to ``/api/v1/authn``.

        Returns a session in ``SESSION_ESTABLISHED`` when no MFA is required,
        otherwise in ``MFA_REQUIRED`` carrying the enrolled factors.
        """
        session = AuthSession(org_url=self.org_url)
        session.advance(AuthState.PRIMARY_AUTH_SUBMITTED)
        logger.debug("Attempting to login as %s", credentials.username)

        try:
            body = await self._post(
                f"{self.org_url}/api/v1/authn",
                {
                    "username": credentials.username,
                    "password": credentials.password,
                    "options": {
                        "multiOptionalFactorEnroll": False,
                        "warnBeforePasswordExpired": False,
                    },
                },
                Stage.AUTHENTICATE,
            )
        except AuthenticationError:
            session.advance(AuthState.REJECTED)
            raise

        if body.get("status") == "PASSWORD_WARN":
            body = await self.skip_password_warning(body)

        return self._apply_authn(session, body)

    async def skip_password_warning(self, body):
        """Acknowledge a ``PASSWORD_WARN`` response and continue the login."""
        logger.warning("Your Okta password will expire soon, please change it")
        skip_url = _nested(body, "_links", "skip", "href")
        if not skip_url:
            raise AuthenticationError("Okta reported PASSWORD_WARN without a skip link")
        return await self._post(skip_url, {"stateToken": body.get("stateToken")}, Stage.AUTHENTICATE)

    def _apply_authn(self, session, body):
        status = body.get("status")
        session.expires_at = body.get("expiresAt")

        if status == "SUCCESS":
            session.session_token = body.get("sessionToken")
            if not session.session_token:
                session.advance(AuthState.REJECTED)
                raise AuthenticationError("Okta did not return a session token")
            session.advance(AuthState.SESSION_ESTABLISHED)
            return session

        if status in MFA_STATUSES:
            session.state_token = body.get("stateToken")
            if not session.state_token:
                session.advance(AuthState.REJECTED)
                raise AuthenticationError("no state token found in MFA response")
            factors = _nested(body, "_embedded", "factors") or []
            session.factors = [
                MfaFactor.from_okta(f) for f in factors if isinstance(f, dict) and f.get("id")
            ]
            session.advance(AuthState.MFA_REQUIRED)
            return session

        session.advance(AuthState.REJECTED)
        if status in REJECTED_STATUSES:
            raise AuthenticationError(REJECTED_STATUSES[status])
        raise AuthenticationError(f"unexpected authentication status: {status}")

    # -----------------------------------------------------------------------
    # MFA
    # -----------------------------------------------------------------------

    async def select_factor(self, factors, selector=None):
        """Pick the factor to verify with.

        A single usable factor is chosen automatically; with several, the
        *selector* callback is asked for an index.
        """
        if not factors:
            raise NoFactorsEnrolledError("MFA required, and no available factors")

        usable = [f for f in factors if f.supported]
        if not usable:
            kinds = ", ".join(sorted({f.factor_type for f in factors}))
            raise NoFactorsEnrolledError(f"MFA required, and no supported factors enrolled ({kinds})")

        if len(usable) == 1:
            logger.info("Only one factor available, using it")
            return usable[0]

        if selector is None:
            raise MfaError("several MFA factors are enrolled and no way to choose between them")

        index = await selector("Select MFA factor", [f.label() for f in usable])
        if not 0 <= index < len(usable):
            raise MfaError(f"invalid MFA factor selection: {index}")
        return usable[index]

    async def challenge_factor(self, session, factor, code_provider=None):
        """Start verification of *factor*.

        Push factors only trigger the notification.  Code factors prompt
        through *code_provider*; SMS, call and email factors have Okta send
        the code first.
        """
        if not factor.supported:
            raise UnsupportedFactorError(f"factor type {factor.factor_type} is not supported")
        if not factor.verify_url:
            raise MfaError(f"factor {factor.label()} has no verification link")

        session.factor = factor
        session.advance(AuthState.MFA_CHALLENGE_SENT)

        if factor.is_push:
            logger.info("Sending push notification to Okta Verify, please approve it")
            body = await self._verify(session, factor.verify_url)
            self._apply_verify(session, body)
            return session

        if factor.requires_code and code_provider is None:
            raise MfaError(f"{factor.label()} requires a verification code")

        if factor.sends_code:
            logger.info("Sending %s code...", factor.label())
            body = await self._verify(session, factor.verify_url)
            self._apply_verify(session, body)

        code = (await code_provider(factor)).strip()
        body = await self._verify(session, factor.verify_url, passcode=code)
        self._apply_verify(session, body)
        return session

    async def _verify(self, session, url, passcode=None):
        payload = {"stateToken": session.state_token}
        if passcode:
            payload["passCode"] = passcode
        return await self._post(url, payload, Stage.MFA)

    def _apply_verify(self, session, body):
        """Fold a verify/poll response into *session*; return the factor result."""
        status = body.get("status")
        session.state_token = body.get("stateToken", session.state_token)
        if body.get("expiresAt"):
            session.expires_at = body["expiresAt"]

        if status == "SUCCESS":
            session.session_token = body.get("sessionToken")
            if not session.session_token:
                session.advance(AuthState.REJECTED)
                raise MfaRejectedError("Okta did not return a session token after verification")
            session.advance(AuthState.SESSION_ESTABLISHED)
            return "SUCCESS"

        result = body.get("factorResult", "")
        if result == "REJECTED":
            session.advance(AuthState.REJECTED)
            raise MfaRejectedError("MFA verification was rejected")
        if result == "TIMEOUT":
            session.advance(AuthState.TIMED_OUT)
            raise MfaTimeoutError("MFA verification timed out")

        session.poll_url = _nested(body, "_links", "next", "href") or session.poll_url
        answer = _nested(body, "_embedded", "factor", "_embedded", "challenge", "correctAnswer")
        if answer is not None:
            logger.info("Select %s in Okta Verify to approve the sign-in", answer)
        return result or status

    async def poll_factor(self, session):
        """Poll a push factor until approved, rejected or out of attempts.

        The challenge response already said ``WAITING``, so every poll waits
        ``poll_interval`` seconds first, the first one included.  The loop
        never sleeps longer than ``poll_max_attempts * poll_interval``.
        Transport failures use up attempts and a separate
        ``poll_network_retries`` budget.
        """
        settings = self.settings
        url = session.poll_url or session.factor.verify_url
        network_failures = 0

        for attempt in range(settings.poll_max_attempts):
            await self.sleep(settings.poll_interval)
            session.advance(AuthState.POLLING)

            try:
                body = await self._post(url, {"stateToken": session.state_token}, Stage.MFA)
            except NetworkError as exc:
                network_failures += 1
                logger.warning("MFA poll failed (%s), attempt %d", exc.reason, attempt + 1)
                if network_failures > settings.poll_network_retries:
                    session.advance(AuthState.TIMED_OUT)
                    raise MfaTimeoutError(
                        f"gave up polling after {network_failures} network failures"
                    ) from exc
                continue

            if self._apply_verify(session, body) == "SUCCESS":
                return session
            logger.debug("MFA still waiting after poll %d", attempt + 1)
            url = session.poll_url or url

        session.advance(AuthState.TIMED_OUT)
        raise MfaTimeoutError(
            f"push notification was not approved after {settings.poll_max_attempts} polls"
        )

    # -----------------------------------------------------------------------
    # Full login
    # -----------------------------------------------------------------------

    async def authenticate(self, credentials, selector=None, code_provider=None):
        """Run primary auth and, if required, MFA; return an established session."""
        session = await self.submit_primary_auth(credentials)
        if session.established:
            return session

        logger.info("MFA verification required")
        factor = await self.select_factor(session.factors, selector)
        logger.debug("Factor: %s", factor.label())
        await self.challenge_factor(session, factor, code_provider)
        if session.established:
            return session

        if not factor.is_push:
            session.advance(AuthState.REJECTED)
            raise MfaRejectedError(f"{factor.label()} verification was not accepted")

        try:
            await asyncio.wait_for(self.poll_factor(session), self.settings.poll_budget)
        except asyncio.TimeoutError:
            if session.state not in TERMINAL_STATES:
                session.advance(AuthState.TIMED_OUT)
            raise MfaTimeoutError(
                f"push notification was not approved within {self.settings.poll_budget:.0f}s"
            ) from None
        return session

    async def app_links(self, session):
        """List the apps assigned to the user; needs an established web session."""
        response = await self.transport.get(
            f"{self.org_url}/api/v1/users/me/appLinks",
            headers={"Accept": "application/json"},
            stage=Stage.ASSERTION,
        )
        raise_for_status(response, stage=Stage.ASSERTION)
        try:
            links = response.json()
        except ValueError:
            links = None
        if not isinstance(links, list):
            raise self._malformed(response, Stage.ASSERTION)
        return [
            AppLink(
                app_name=link.get("appName", ""),
                label=link.get("label", ""),
                link_url=link.get("linkUrl", ""),
            )
            for link in links
            if isinstance(link, dict)
        ]
