"""Profile refresh pipeline: Okta login, SAML assertion, role, STS, cache.

Each refresh owns its :class:`~okta_creds.http.HttpTransport` and
:class:`~okta_creds.models.AuthSession`; profiles only share the credential
store.  :meth:`Broker.refresh_all` runs profiles concurrently and reports
failures per profile instead of aborting the whole run.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from . import roles, saml, sts
from .cache import CredentialCache, utcnow
from .config import Settings
from .errors import AssertionNotFoundError, OktaCredsError, RunTimeoutError, Stage
from .http import HttpTransport, raise_for_status
from .models import PrimaryCredentials, TemporaryCredentials
from .okta import AWS_APP_NAME, OktaClient

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    profile: str
    credentials: Optional[TemporaryCredentials] = None
    error: Optional[OktaCredsError] = None

    @property
    def ok(self):
        return self.error is None


class Broker:
    """Compose the pipeline stages around a :class:`CredentialCache`.

    The interactive collaborators are async callables:

    * ``password_provider(profile) -> str``
    * ``selector(title, options) -> int``
    * ``code_provider(factor) -> str``
    """

    def __init__(
        self,
        storage,
        password_provider,
        settings=None,
        selector=None,
        code_provider=None,
        transport_factory=None,
        sts_client_factory=None,
        clock=utcnow,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or Settings()
        self.password_provider = password_provider
        self.selector = selector
        self.code_provider = code_provider
        self.transport_factory = transport_factory or (
            lambda: HttpTransport(timeout=self.settings.http_timeout)
        )
        self.sts_client_factory = sts_client_factory or sts.sts_client
        self.sleep = sleep
        self.cache = CredentialCache(
            storage,
            self.run_pipeline,
            safety_margin=self.settings.safety_margin_delta,
            clock=clock,
        )

    async def run_pipeline(self, profile):
        """Authenticate from scratch and exchange for fresh credentials."""
        logger.info("Requesting tokens for %s", profile.name)
        password = await self.password_provider(profile)
        credentials = PrimaryCredentials(username=profile.username, password=password)

        with self.transport_factory() as transport:
            client = OktaClient(transport, profile.org_url, self.settings, sleep=self.sleep)
            session = await client.authenticate(credentials, self.selector, self.code_provider)
            logger.info("Okta authentication successful for %s", profile.name)
            app_url = await self._app_url(client, transport, session, profile)
            assertion = await saml.fetch_assertion(transport, session, app_url)

        saml.parse_assertion(assertion)
        logger.debug("SAML roles: %s", ", ".join(r.alias for r in assertion.roles))

        if profile.role:
            role = roles.resolve(assertion.roles, profile.role, profile.account)
        else:
            role = await roles.choose_role(assertion.roles, self.selector, profile.account)

        region = profile.region or self.settings.region
        duration = profile.duration_seconds or assertion.session_duration
        return await sts.exchange(
            assertion,
            role,
            duration_seconds=duration,
            region=region,
            client=self.sts_client_factory(region),
        )

    async def _app_url(self, client, transport, session, profile):
        """Return the AWS app launch URL, looking it up by label if not configured."""
        if profile.app_url:
            return profile.app_url

        response = await saml.open_web_session(transport, session, f"{profile.org_url}/")
        raise_for_status(response, stage=Stage.ASSERTION)
        links = [link for link in await client.app_links(session) if link.app_name == AWS_APP_NAME]
        if profile.application_name:
            links = [link for link in links if link.label == profile.application_name]

        if len(links) == 1:
            logger.debug("Application link for %s: %s", profile.name, links[0].label)
            return links[0].link_url
        if not links:
            raise AssertionNotFoundError(
                f"could not find an Okta AWS application for profile {profile.name}"
            )
        raise AssertionNotFoundError(
            "several Okta AWS applications are assigned ("
            + ", ".join(link.label for link in links)
            + "); set application_name or app_url"
        )

    async def refresh(self, profile, force=False):
        """Return valid credentials for *profile*, re-authenticating if needed."""
        try:
            if force:
                await self.cache.invalidate(profile)
            return await asyncio.wait_for(self.cache.get(profile), self.settings.run_timeout)
        except asyncio.TimeoutError:
            raise RunTimeoutError(
                f"authentication did not finish within {self.settings.run_timeout:.0f}s",
                profile=profile.name,
            ) from None
        except OktaCredsError as exc:
            exc.profile = exc.profile or profile.name
            raise
        except Exception as exc:
            # Unexpected library failures still end only this profile's run.
            logger.debug("Unexpected failure refreshing %s", profile.name, exc_info=True)
            raise OktaCredsError(
                f"unexpected {exc.__class__.__name__} during refresh", profile=profile.name
            ) from exc

    async def refresh_all(self, profiles, force=False):
        """Refresh *profiles* concurrently; return ``{name: RefreshResult}``."""

        async def refresh_one(profile):
            try:
                credentials = await self.refresh(profile, force=force)
            except OktaCredsError as exc:
                logger.error(exc.describe())
                return RefreshResult(profile.name, error=exc)
            return RefreshResult(profile.name, credentials=credentials)

        results = await asyncio.gather(*(refresh_one(p) for p in profiles))
        return {result.profile: result for result in results}
