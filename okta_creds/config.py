"""INI configuration for profiles and broker policy.

Example ``~/.okta-creds``::

    [default]
    okta_url = https://corp.okta.com
    username = jdoe
    region = eu-west-1

    [settings]
    poll_interval = 3
    safety_margin = 300

    [profile dev]
    app_url = https://corp.okta.com/home/amazon_aws/0oa1/272
    role = Developer
    account = 111111111111

Values in ``[profile NAME]`` sections fall back to ``[default]``.
"""

import configparser
import fnmatch
import os
from dataclasses import dataclass, fields
from datetime import timedelta

from .errors import ConfigurationError
from .models import Profile

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.okta-creds")
DEFAULT_CACHE_DIR = os.path.expanduser("~/.okta-creds.d")
DEFAULT_REGION = "us-east-1"
DEFAULT_SECTION = "default"
SETTINGS_SECTION = "settings"
PROFILE_PREFIX = "profile "

STORAGE_BACKENDS = ("auto", "keyring", "file")


@dataclass
class Settings:
    """Policy constants; every value can be overridden in ``[settings]``."""

    poll_interval: float = 3.0  # seconds between push-approval polls
    poll_max_attempts: int = 60
    poll_network_retries: int = 3
    safety_margin: int = 300  # seconds of validity required for a cache hit
    run_timeout: float = 600.0
    http_timeout: float = 30.0
    region: str = DEFAULT_REGION
    storage: str = "auto"
    cache_dir: str = DEFAULT_CACHE_DIR

    @property
    def safety_margin_delta(self):
        return timedelta(seconds=self.safety_margin)

    @property
    def poll_budget(self):
        """Upper bound on the wall-clock time one MFA poll loop may take."""
        return self.poll_max_attempts * self.poll_interval + self.http_timeout


def config_path_from_env():
    return os.environ.get("OKTA_CREDS_CONFIG", DEFAULT_CONFIG_PATH)


def load_config(config_path):
    """Load configuration from an INI file."""
    config = configparser.ConfigParser()
    if os.path.exists(config_path):
        try:
            config.read(config_path)
        except configparser.Error as exc:
            raise ConfigurationError(f"cannot parse {config_path}: {exc.message}") from exc
    return config


def normalize_url(url):
    if not url.startswith("http"):
        url = f"https://{url}"
    return url.rstrip("/")


def load_settings(config):
    settings = Settings()
    if not config.has_section(SETTINGS_SECTION):
        return settings

    section = config[SETTINGS_SECTION]
    for item in fields(Settings):
        if item.name not in section:
            continue
        try:
            if item.type is int:
                value = section.getint(item.name)
            elif item.type is float:
                value = section.getfloat(item.name)
            else:
                value = os.path.expanduser(section.get(item.name))
        except ValueError:
            raise ConfigurationError(
                f"invalid value for {item.name!r}: {section.get(item.name)!r}"
            ) from None
        setattr(settings, item.name, value)

    if settings.storage not in STORAGE_BACKENDS:
        raise ConfigurationError(
            f"unknown storage backend {settings.storage!r}; expected one of {', '.join(STORAGE_BACKENDS)}"
        )
    if settings.poll_interval <= 0 or settings.poll_max_attempts < 1:
        raise ConfigurationError("poll_interval and poll_max_attempts must be positive")
    if settings.safety_margin < 0:
        raise ConfigurationError("safety_margin must not be negative")
    return settings


def _profile_from_section(config, name, section):
    def cf(key, fallback=None):
        """Return the profile value, else the [default] value, else fallback."""
        if config.has_option(section, key):
            return config.get(section, key)
        if config.has_section(DEFAULT_SECTION) and config.has_option(DEFAULT_SECTION, key):
            return config.get(DEFAULT_SECTION, key)
        return fallback

    okta_url = cf("okta_url")
    username = cf("username")
    if not okta_url:
        raise ConfigurationError(f"profile {name!r} has no okta_url", profile=name)
    if not username:
        raise ConfigurationError(f"profile {name!r} has no username", profile=name)

    duration = cf("duration")
    if duration is not None:
        try:
            duration = int(duration)
        except ValueError:
            raise ConfigurationError(
                f"profile {name!r} has an invalid duration: {duration!r}", profile=name
            ) from None

    return Profile(
        name=name,
        org_url=normalize_url(okta_url),
        username=username,
        role=cf("role"),
        account=cf("account"),
        app_url=cf("app_url"),
        application_name=cf("application_name"),
        region=cf("region"),
        duration_seconds=duration,
    )


def load_profiles(config, pattern="*", organization="*"):
    """Return the profiles whose name matches *pattern* and org host *organization*.

    Both patterns are shell-style globs.  Profiles keep file order.
    """
    profiles = []
    for section in config.sections():
        if not section.startswith(PROFILE_PREFIX):
            continue
        name = section[len(PROFILE_PREFIX):].strip()
        if not fnmatch.fnmatchcase(name, pattern):
            continue
        profile = _profile_from_section(config, name, section)
        host = profile.org_url.split("://", 1)[-1]
        if not (fnmatch.fnmatchcase(host, organization) or fnmatch.fnmatchcase(profile.org_url, organization)):
            continue
        profiles.append(profile)
    return profiles
