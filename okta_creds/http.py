"""Cookie-preserving HTTP transport used by every network-facing component.

One :class:`HttpTransport` is created per authentication run so that cookies
assigned by Okta (``sid``, ``DT`` ...) flow between the authn API calls and
the app launch page.  ``requests`` is blocking, so each call is offloaded with
:func:`asyncio.to_thread` and other profile refreshes keep running meanwhile.
"""

import asyncio
import logging
from urllib.parse import urlsplit

import requests

from .errors import NetworkError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


def describe_url(url):
    """Return ``host/path`` for *url* with the query string dropped.

    Query strings can carry session tokens, so full URLs are never logged.
    """
    parts = urlsplit(url)
    return f"{parts.netloc}{parts.path}"


class HttpTransport:
    """Thin async wrapper around a :class:`requests.Session`."""

    def __init__(self, timeout=DEFAULT_TIMEOUT, session=None, stage=None):
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.stage = stage
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        if not self.closed:
            self.session.close()
            self.closed = True

    async def request(self, method, url, stage=None, **kwargs):
        """Issue a request and return the :class:`requests.Response`.

        Connection failures and timeouts become :class:`NetworkError`.  HTTP
        error statuses are returned as-is; callers decide what they mean.
        """
        kwargs.setdefault("timeout", self.timeout)
        logger.debug("%s %s", method, describe_url(url))
        try:
            response = await asyncio.to_thread(self.session.request, method, url, **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(
                f"{exc.__class__.__name__} contacting {urlsplit(url).netloc}",
                stage=stage or self.stage,
            ) from None
        logger.debug("%s %s -> HTTP %s", method, describe_url(response.url or url), response.status_code)
        return response

    async def get(self, url, params=None, stage=None, **kwargs):
        kwargs.setdefault("allow_redirects", True)
        return await self.request("GET", url, params=params, stage=stage, **kwargs)

    async def post_json(self, url, payload, stage=None):
        return await self.request("POST", url, json=payload, headers=JSON_HEADERS, stage=stage)

    def has_cookie(self, name):
        return name in self.session.cookies


def raise_for_status(response, stage=None):
    """Turn an HTTP error status into :class:`NetworkError` without leaking the URL."""
    try:
        response.raise_for_status()
    except requests.HTTPError:
        raise NetworkError(
            f"HTTP {response.status_code} from {urlsplit(response.url or '').netloc}",
            stage=stage,
        ) from None
    return response
