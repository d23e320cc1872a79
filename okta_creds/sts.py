"""AWS STS exchange: SAML assertion for temporary role credentials."""

import asyncio
import logging

import boto3
from botocore import UNSIGNED
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import DEFAULT_REGION
from .errors import ExchangeRejectedError, NetworkError, Stage
from .models import TemporaryCredentials

logger = logging.getLogger(__name__)

MAX_SESSION_DURATION = 43200  # STS max is 12 h
MIN_SESSION_DURATION = 900

# AssumeRoleWithSAML is authenticated by the assertion itself, and a rejected
# assertion never succeeds on a second try.
STS_CONFIG = Config(signature_version=UNSIGNED, retries={"total_max_attempts": 1})


def sts_client(region=None):
    return boto3.client("sts", region_name=region or DEFAULT_REGION, config=STS_CONFIG)


def clamp_duration(duration_seconds):
    return max(MIN_SESSION_DURATION, min(duration_seconds, MAX_SESSION_DURATION))


def assume_role_with_saml(client, assertion, role, duration_seconds):
    """Call STS AssumeRoleWithSAML and return :class:`TemporaryCredentials`."""
    try:
        response = client.assume_role_with_saml(
            RoleArn=role.role_arn,
            PrincipalArn=role.principal_arn,
            SAMLAssertion=assertion.raw,
            DurationSeconds=clamp_duration(duration_seconds),
        )
    except ClientError as exc:
        error = exc.response.get("Error", {})
        reason = error.get("Message") or error.get("Code") or str(exc)
        raise ExchangeRejectedError(reason) from None
    except BotoCoreError as exc:
        raise NetworkError(str(exc), stage=Stage.EXCHANGE) from None
    return TemporaryCredentials.from_sts(response["Credentials"])


async def exchange(assertion, role, duration_seconds=None, region=None, client=None):
    """Exchange *assertion* for credentials of *role* without blocking the loop."""
    if duration_seconds is None:
        duration_seconds = assertion.session_duration
    client = client or sts_client(region)
    logger.info("Assuming role: %s", role.role_arn)
    return await asyncio.to_thread(assume_role_with_saml, client, assertion, role, duration_seconds)
