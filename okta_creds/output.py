"""Expose resolved credentials to AWS tooling: shared credentials file or env."""

import configparser
import logging
import os
import tempfile

from .config import DEFAULT_REGION

logger = logging.getLogger(__name__)


def aws_credentials_path():
    return os.environ.get("AWS_SHARED_CREDENTIALS_FILE", os.path.expanduser("~/.aws/credentials"))


def aws_config_path():
    return os.environ.get("AWS_CONFIG_FILE", os.path.expanduser("~/.aws/config"))


def _read_ini(path):
    config = configparser.ConfigParser(interpolation=None)
    if os.path.exists(path):
        config.read(path)
    return config


def _write_ini(config, path):
    """Replace *path* with *config* in one step; the file gets mode 0600."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".okta-creds-")
    try:
        with os.fdopen(fd, "w") as fh:
            config.write(fh)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def write_aws_credentials(entries, credentials_path=None, config_path=None, default_region=DEFAULT_REGION):
    """Write ``(profile, credentials)`` pairs to the AWS shared credentials file.

    Sections holding long-term IAM keys (no session token) are left alone.
    The region of each profile is also recorded in ``~/.aws/config``.
    Returns the names of the profiles that were written.
    """
    credentials_path = credentials_path or aws_credentials_path()
    config_path = config_path or aws_config_path()

    creds_config = _read_ini(credentials_path)
    aws_cfg = _read_ini(config_path)
    written = []

    for profile, credentials in entries:
        name = profile.name
        if creds_config.has_section(name):
            section = creds_config[name]
            if "aws_access_key_id" in section and "aws_session_token" not in section:
                logger.warning("Profile '%s' does not contain STS credentials. Ignoring", name)
                continue
        else:
            creds_config.add_section(name)

        region = profile.region or default_region
        creds_config.set(name, "aws_access_key_id", credentials.access_key_id)
        creds_config.set(name, "aws_secret_access_key", credentials.secret_access_key)
        creds_config.set(name, "aws_session_token", credentials.session_token)
        creds_config.set(name, "aws_expiration", credentials.expiration.strftime("%Y-%m-%dT%H:%M:%SZ"))
        creds_config.set(name, "region", region)

        cfg_section = "default" if name == "default" else f"profile {name}"
        if not aws_cfg.has_section(cfg_section):
            aws_cfg.add_section(cfg_section)
        aws_cfg.set(cfg_section, "region", region)
        if not aws_cfg.has_option(cfg_section, "output"):
            aws_cfg.set(cfg_section, "output", "json")
        written.append(name)

    if written:
        logger.info("Saving AWS credentials to %s", credentials_path)
        _write_ini(creds_config, credentials_path)
        _write_ini(aws_cfg, config_path)
    return written


def format_env(credentials, region=None):
    """Render ``export`` lines for a POSIX shell."""
    lines = [
        f"export AWS_ACCESS_KEY_ID={credentials.access_key_id}",
        f"export AWS_SECRET_ACCESS_KEY={credentials.secret_access_key}",
        f"export AWS_SESSION_TOKEN={credentials.session_token}",
        f"export AWS_CREDENTIAL_EXPIRATION={credentials.expiration.strftime('%Y-%m-%dT%H:%M:%SZ')}",
    ]
    if region:
        lines.append(f"export AWS_REGION={region}")
    return "\n".join(lines)
