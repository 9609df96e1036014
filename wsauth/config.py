# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

"""Tool settings resolved from CLI flags, an INI file and built-in defaults.

Resolution (highest first):
  1. explicit values passed by the caller (CLI flags)
  2. the selected section of the INI file
  3. ``DEFAULTS``

INI discovery: ``--config`` path, else ``$WSAUTH_CONFIG``, else
``<config_dir>/wsauth.ini`` when it exists. Section selection: explicit
``--section``, else a section named after the environment, else ``DEFAULT``.
An explicitly named INI file that cannot be read is a configuration error;
an auto-discovered one that is missing is not.
"""

import configparser
import getpass
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigError

LOG = logging.getLogger(__name__)

CONFIG_ENV_VAR = "WSAUTH_CONFIG"
CONFIG_FILENAME = "wsauth.ini"
DEFAULT_SCOPES = ("openid", "email", "offline_access", "login:cli")
URL_SETTINGS = ("discovery_uri", "apps_uri", "aws_sso_start_url")


def _split(value) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return tuple(v for v in str(value).replace(",", " ").split() if v)


def _bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    environment: str = "prod"
    config_dir: str = "~/.wsauth"
    # central OIDC provider
    client_id: Optional[str] = None
    discovery_uri: Optional[str] = None
    audience: Optional[str] = None
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    login_method: str = "device"
    redirect_port: int = 8181
    login_timeout: int = 300
    safety_margin: int = 60
    http_timeout: int = 30
    claims_namespace: str = "https://wsauth.dev/v1"
    # secret store
    secret_backend: str = "file"
    passphrase_env: Optional[str] = None
    passphrase_prompt: bool = False
    # projection
    owned_prefix: str = "sso-"
    max_workers: int = 8
    cli_name: str = "wsauth"
    apps_uri: Optional[str] = None
    kubeconfig: str = "~/.kube/config"
    aws_config_file: str = "~/.aws/config"
    # AWS IAM Identity Center
    aws_sso_session: str = "wsauth"
    aws_sso_start_url: Optional[str] = None
    aws_sso_region: str = "us-east-2"
    aws_regions: Tuple[str, ...] = ()
    aws_cache_dir: str = "~/.aws/sso/cache"
    aws_email_prefix: Optional[str] = None
    aws_email_suffix: Optional[str] = None
    # Azure
    azure_tenant: Optional[str] = None
    # package registries
    npm_registry: Optional[str] = None
    npmrc: str = "~/.npmrc"
    poetry_auth: str = "~/.config/pypoetry/auth.toml"
    registry_username_env: str = "REGISTRY_USERNAME"
    registry_token_env: str = "REGISTRY_TOKEN"
    source: Optional[str] = field(default=None, compare=False)

    @property
    def auth_dir(self) -> str:
        return os.path.join(os.path.expanduser(self.config_dir), "auth")

    def path(self, name: str) -> str:
        return os.path.expanduser(getattr(self, name))

    def eks_regions(self) -> Tuple[str, ...]:
        return self.aws_regions or (self.aws_sso_region,)

    def validate(self, require_oidc: bool = True) -> "Settings":
        if require_oidc:
            missing = [k for k in ("client_id", "discovery_uri") if not getattr(self, k)]
            if missing:
                raise ConfigError(f"Missing required options: {', '.join(missing)}. Provide via CLI or config file.")
        bad = []
        for name in URL_SETTINGS:
            val = getattr(self, name)
            if val and not (val.startswith("http://") or val.startswith("https://")):
                bad.append((name, val))
        if bad:
            raise ConfigError(
                "Invalid URL value(s): " + ", ".join(f"{n}='{v}'" for n, v in bad)
                + "; must start with http:// or https://"
            )
        if self.login_method not in ("device", "browser"):
            raise ConfigError(f"login_method must be 'device' or 'browser', not {self.login_method!r}")
        if self.secret_backend not in ("file", "keyring"):
            raise ConfigError(f"secret_backend must be 'file' or 'keyring', not {self.secret_backend!r}")
        return self


CASTS = {
    "scopes": _split,
    "aws_regions": _split,
    "redirect_port": int,
    "login_timeout": int,
    "safety_margin": int,
    "http_timeout": int,
    "max_workers": int,
    "passphrase_prompt": _bool,
}

DEFAULTS = {f.name: f.default for f in fields(Settings) if f.name != "source"}


def discover_config_path(explicit: Optional[str], environ: Mapping[str, str]) -> Tuple[Optional[str], bool]:
    """Return (path, explicit?) for the INI file to read."""
    if explicit:
        return explicit, True
    if environ.get(CONFIG_ENV_VAR):
        return environ[CONFIG_ENV_VAR], True
    candidate = os.path.join(os.path.expanduser(DEFAULTS["config_dir"]), CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate, False
    return None, False


def read_section(path: str, section: Optional[str], environment: str, explicit: bool) -> Tuple[Dict[str, str], Optional[str]]:
    cp = configparser.ConfigParser(interpolation=None)
    try:
        read_files = cp.read(path, encoding="utf-8")
    except configparser.Error as e:
        if explicit:
            raise ConfigError(f"Error reading config file {path}: {e}") from e
        LOG.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}, None
    if not read_files:
        if explicit:
            raise ConfigError(f"Failed to read config file: {path}")
        return {}, None

    if section:
        if section not in cp:
            raise ConfigError(f"Section [{section}] not found in {path}")
        return dict(cp[section].items()), section
    if environment in cp:
        return dict(cp[environment].items()), environment
    return dict(cp.defaults()), "DEFAULT"


def load_settings(
    config_file: Optional[str] = None,
    section: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    environ = os.environ if environ is None else environ
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    environment = overrides.get("environment", DEFAULTS["environment"])

    path, explicit = discover_config_path(config_file, environ)
    ini_data: Dict[str, str] = {}
    selected = None
    if path:
        ini_data, selected = read_section(path, section, environment, explicit)
        if "environment" in ini_data and "environment" not in overrides:
            environment = ini_data["environment"]

    def pick(name):
        if name in overrides:
            return overrides[name]
        if ini_data.get(name, "") != "":
            cast = CASTS.get(name)
            try:
                return cast(ini_data[name]) if cast else ini_data[name]
            except ValueError as e:
                raise ConfigError(f"Invalid value for {name} in {path}: {e}") from e
        return DEFAULTS[name]

    values = {name: pick(name) for name in DEFAULTS}
    values["environment"] = environment
    settings = Settings(**values, source=path)
    LOG.debug("Resolved settings from %s section=%s environment=%s", path, selected, environment)
    return settings


def resolve_passphrase(settings: Settings, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Passphrase used to encrypt the file secret store, or None for plaintext envelopes."""
    environ = os.environ if environ is None else environ
    # prompt takes precedence
    if settings.passphrase_prompt:
        pw = getpass.getpass("Enter secret store passphrase: ")
        if not pw:
            LOG.warning("Empty passphrase entered; tokens will be stored unencrypted.")
            return None
        return pw
    if settings.passphrase_env:
        pw = environ.get(settings.passphrase_env)
        if pw:
            return pw
        LOG.warning("Env var %s is not set or empty; tokens will be stored unencrypted.", settings.passphrase_env)
    return None
