"""
okta-creds: mint temporary AWS credentials for many profiles via Okta SAML.

Authenticates to Okta (including MFA), fetches the SAML assertion of the AWS
app, assumes the configured role via STS, caches the result per profile and
writes it to ~/.aws/credentials.
"""

import argparse
import asyncio
import getpass
import logging
import re
import sys

from .broker import Broker
from .config import config_path_from_env, load_config, load_profiles, load_settings
from .errors import OktaCredsError
from .output import aws_credentials_path, format_env, write_aws_credentials
from .storage import select_storage

logger = logging.getLogger("okta_creds")

# ---------------------------------------------------------------------------
# Interactive prompts
# ---------------------------------------------------------------------------


def _choose(title, options):
    """Print a numbered menu on stderr and return the chosen index."""
    print(f"\n{title}:", file=sys.stderr)
    for i, option in enumerate(options):
        print(f"  [{i + 1}] {option}", file=sys.stderr)

    while True:
        print(f"\n{title}: ", end="", file=sys.stderr, flush=True)
        try:
            choice = int(input().strip()) - 1
            if 0 <= choice < len(options):
                return choice
        except ValueError:
            pass
        print("Invalid selection, please try again.", file=sys.stderr)


def _read_code(label):
    print(f"Enter {label} code: ", end="", file=sys.stderr, flush=True)
    return input().strip()


class TerminalPrompter:
    """Terminal implementation of the broker's interactive collaborators.

    Prompts run in a worker thread and one at a time, so concurrent profile
    refreshes never interleave on the terminal.  A prompt abandoned by the
    run timeout keeps its thread blocked on stdin; the next prompt waits for
    that read to finish instead of competing with it for input.  Passwords
    are remembered in memory per (org, username) for the duration of the run
    only.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._passwords = {}
        self._pending = None

    async def _ask(self, func, *args):
        """Run a blocking prompt; the caller must hold the lock."""
        if self._pending is not None and not self._pending.done():
            print("\nPress Enter to continue.", file=sys.stderr, flush=True)
            await asyncio.wait([self._pending])
        self._pending = asyncio.ensure_future(asyncio.to_thread(func, *args))
        return await asyncio.shield(self._pending)

    async def password(self, profile):
        key = (profile.org_url, profile.username)
        async with self._lock:
            if key not in self._passwords:
                self._passwords[key] = await self._ask(
                    getpass.getpass, f"Password for {profile.username} at {profile.org_url}: "
                )
            return self._passwords[key]

    async def select(self, title, options):
        async with self._lock:
            return await self._ask(_choose, title, options)

    async def code(self, factor):
        async with self._lock:
            return await self._ask(_read_code, factor.label())


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


# Library loggers that print request URLs or bodies carrying tokens at DEBUG.
NOISY_LOGGERS = ("urllib3", "botocore", "boto3", "s3transfer")

_SECRET_PATTERNS = [
    (re.compile(r"\b(token|sessionToken|stateToken)=[^&\s\"']+"), r"\1=<redacted>"),
    (
        re.compile(
            r"(['\"]?\b(?:SAMLAssertion|SecretAccessKey|SessionToken|sessionToken|stateToken|password|passCode)"
            r"['\"]?\s*[:=]\s*)(\"[^\"]*\"|'[^']*'|[^\s,&}]+)"
        ),
        r"\1<redacted>",
    ),
    (re.compile(r"(<(?:SecretAccessKey|SessionToken)>)[^<]*(</)"), r"\1<redacted>\2"),
]


class RedactingFilter(logging.Filter):
    """Mask tokens, assertions and keys in log records before they are emitted."""

    def filter(self, record):
        message = record.getMessage()
        redacted = message
        for pattern, replacement in _SECRET_PATTERNS:
            redacted = pattern.sub(replacement, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(verbosity=0, quiet=False):
    if quiet:
        level = logging.ERROR
    elif verbosity:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    if verbosity:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(RedactingFilter())

    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False
    # -vv also shows other libraries, but never the request-level debug output
    logging.basicConfig(level=logging.DEBUG if verbosity > 1 else logging.WARNING, stream=sys.stderr)
    for root_handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in root_handler.filters):
            root_handler.addFilter(RedactingFilter())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbosity > 1 else logging.WARNING)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="okta-creds",
        description="Generate temporary AWS credentials for Okta profiles.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  okta-creds                         Refresh every profile in ~/.okta-creds
  okta-creds 'prod-*'                Refresh profiles matching a glob
  okta-creds -o corp.okta.com dev    Only profiles of one Okta organization
  okta-creds -f dev                  Ignore cached credentials
  eval "$(okta-creds --env dev)"     Export credentials into the shell
""",
    )
    parser.add_argument("profiles", nargs="?", default="*",
                        help="Profile name or glob to update (default: all)")
    parser.add_argument("-o", "--organizations", default="*",
                        help="Okta organization host glob (default: all)")
    parser.add_argument("-f", "--force-new", action="store_true",
                        help="Ignore cached credentials and re-authenticate")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase verbosity (-vv includes HTTP library logs)")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Only report errors")
    parser.add_argument("--config", default=config_path_from_env(),
                        help="Path to config file (default: ~/.okta-creds)")
    parser.add_argument("--credentials-file", default=None,
                        help="AWS shared credentials file (default: ~/.aws/credentials)")
    parser.add_argument("--env", action="store_true",
                        help="Print export statements instead of writing the credentials file")
    return parser


def main(argv=None):
    args = _build_parser().parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    try:
        config = load_config(args.config)
        settings = load_settings(config)
        profiles = load_profiles(config, args.profiles, args.organizations)
        storage = select_storage(settings)
    except OktaCredsError as exc:
        logger.error(exc.describe())
        return 2

    if not profiles:
        logger.error("No profiles found matching %s in %s", args.profiles, args.config)
        return 1

    prompter = TerminalPrompter()
    broker = Broker(
        storage,
        prompter.password,
        settings,
        selector=prompter.select,
        code_provider=prompter.code,
    )

    try:
        results = asyncio.run(broker.refresh_all(profiles, force=args.force_new))
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130

    succeeded = [(p, results[p.name].credentials) for p in profiles if results[p.name].ok]
    failed = [results[p.name] for p in profiles if not results[p.name].ok]

    if args.env:
        for profile, credentials in succeeded:
            print(f"# {profile.name}")
            print(format_env(credentials, profile.region or settings.region))
    elif succeeded:
        path = args.credentials_file or aws_credentials_path()
        written = write_aws_credentials(succeeded, credentials_path=path, default_region=settings.region)
        for profile, credentials in succeeded:
            if profile.name not in written:
                continue
            expiry = credentials.expiration.strftime("%Y-%m-%d %H:%M:%S UTC")
            logger.info("Credentials written to profile '%s' (%s), expires %s", profile.name, path, expiry)

    if failed:
        logger.error("%d of %d profiles failed:", len(failed), len(profiles))
        for result in failed:
            logger.error("  %s", result.error.describe())
        return 1
    return 0


def run():
    sys.exit(main())
