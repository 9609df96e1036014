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

"""Command-line entry point: login, logout, whoami, token, sso, registries.

Thin by intent: resolve settings, call AuthCore, map outcomes and typed
errors to messages and exit codes.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import load_settings
from .core import AuthCore
from .errors import (
    CONFIG,
    LOCAL_FILE,
    REAUTH,
    UNREACHABLE,
    HandshakeCancelled,
    HandshakeTimedOut,
    ProviderRejected,
    WsAuthError,
)
from .models import Context, LoginCancelled, LoginOutcome, LoginRejected, LoginSuccess, LoginTimedOut, Provider

LOG = logging.getLogger("wsauth")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_REAUTH = 3
EXIT_CANCELLED = 130

REMEDIES = {
    REAUTH: "You need to log in again.",
    UNREACHABLE: "A provider or cloud account is temporarily unreachable; retry later.",
    LOCAL_FILE: "A local file could not be safely updated; it was left unchanged.",
    CONFIG: "Check your wsauth configuration.",
}


def setup_logging(level_str: str) -> None:
    level = getattr(logging, level_str.upper(), logging.INFO)
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
    LOG.addHandler(h)
    LOG.setLevel(level)


def outcome_error(outcome: LoginOutcome) -> Optional[WsAuthError]:
    if isinstance(outcome, LoginSuccess):
        return None
    if isinstance(outcome, LoginCancelled):
        return HandshakeCancelled(outcome.reason)
    if isinstance(outcome, LoginTimedOut):
        return HandshakeTimedOut(outcome.waited)
    if isinstance(outcome, LoginRejected):
        return ProviderRejected(outcome.reason)
    raise TypeError(f"unknown login outcome {outcome!r}")


def exit_code(err: WsAuthError) -> int:
    if isinstance(err, HandshakeCancelled):
        return EXIT_CANCELLED
    return {REAUTH: EXIT_REAUTH, CONFIG: EXIT_CONFIG}.get(err.category, EXIT_FAILURE)


def report_error(err: WsAuthError) -> None:
    print(f"error: {err}", file=sys.stderr)
    print(REMEDIES.get(err.category, ""), file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="wsauth", description="Workstation authentication: OIDC login, token cache and SSO config projection", allow_abbrev=False)
    p.add_argument("--config", default=None, help="Path to wsauth INI file (default: $WSAUTH_CONFIG or ~/.wsauth/wsauth.ini)")
    p.add_argument("--section", default=None, help="INI section to load (default: the environment name, then DEFAULT)")
    p.add_argument("--env", dest="environment", default=None, help="Environment name (default: prod)")
    p.add_argument("--org", dest="organization", default=None, help="Organization context for organization-scoped tokens")
    p.add_argument("--client-id", default=None, help="OIDC client id")
    p.add_argument("--discovery-uri", default=None, help="OpenID configuration URL (.well-known/openid-configuration)")
    p.add_argument("--secret-backend", choices=("file", "keyring"), default=None, help="Where tokens are stored (default: file)")
    p.add_argument("--passphrase-env", default=None, help="Env var holding the passphrase that encrypts the token store")
    p.add_argument("--passphrase-prompt", action="store_const", const=True, default=None, help="Prompt for the token store passphrase")
    p.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR; default INFO)")

    sub = p.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Log in to the identity provider")
    login.add_argument("--force", action="store_true", help="Log in even when a valid token is cached")
    method = login.add_mutually_exclusive_group()
    method.add_argument("--browser", dest="login_method", action="store_const", const="browser", help="Browser login (authorization code + PKCE)")
    method.add_argument("--device", dest="login_method", action="store_const", const="device", help="Device code login")

    sub.add_parser("logout", help="Remove the cached token")

    whoami = sub.add_parser("whoami", help="Show the identity on the cached token")
    whoami.add_argument("--output", choices=("text", "json"), default="text")

    token = sub.add_parser("token", help="Print a valid access token (refreshing if needed)")
    token.add_argument("--output", choices=("raw", "json", "k8s-auth"), default="raw")

    sso = sub.add_parser("sso", help="Project cloud accounts and clusters into CLI profiles and kubeconfig")
    sso.add_argument("providers", nargs="*", type=Provider, default=[], metavar="{aws,azure,platform}", help="Providers to synchronize (default: all)")
    sso.add_argument("--render", action="store_true", help="Print the render context as JSON instead of writing files")

    sub.add_parser("registries", help="Write package registry credentials for --org")
    return p


def settings_overrides(args) -> dict:
    return {
        "environment": args.environment,
        "client_id": args.client_id,
        "discovery_uri": args.discovery_uri,
        "secret_backend": args.secret_backend,
        "passphrase_env": args.passphrase_env,
        "passphrase_prompt": args.passphrase_prompt,
        "login_method": getattr(args, "login_method", None),
    }


def cmd_login(core: AuthCore, args) -> int:
    try:
        outcome = core.login(method=args.login_method, force=args.force)
    except KeyboardInterrupt:
        outcome = LoginCancelled("interrupted")
    err = outcome_error(outcome)
    if err is not None:
        report_error(err)
        return exit_code(err)
    print(f"Logged in to {core.central_domain()}; token valid until {outcome.record.expires_at.isoformat()}")
    return EXIT_OK


def cmd_logout(core: AuthCore, args) -> int:
    domain = core.logout()
    print(f"Logged out of {domain}")
    return EXIT_OK


def cmd_whoami(core: AuthCore, args) -> int:
    core.ensure_authenticated()
    claims = core.whoami()
    if args.output == "json":
        print(json.dumps(claims, indent=2, sort_keys=True))
        return EXIT_OK
    for name in ("email", "name", "sub", f"{core.settings.claims_namespace}/org"):
        if claims.get(name):
            print(f"{name.rsplit('/', 1)[-1]}: {claims[name]}")
    return EXIT_OK


def cmd_token(core: AuthCore, args) -> int:
    if args.output == "k8s-auth":
        print(json.dumps(core.exec_credential()))
        return EXIT_OK
    record = core.ensure_authenticated()
    if args.output == "json":
        print(json.dumps({"access_token": record.access_token, "expires_at": record.expires_at.isoformat()}))
    else:
        print(record.access_token)
    return EXIT_OK


def cmd_sso(core: AuthCore, args) -> int:
    providers = args.providers or list(Provider)
    if args.render:
        results = core.synthesize_all(providers)
        print(json.dumps(core.render_context(results), indent=2))
        return EXIT_OK if not any(isinstance(r, WsAuthError) for r in results.values()) else EXIT_FAILURE

    report = core.sync(providers)
    rc = EXIT_OK
    for provider, result in report.results.items():
        if isinstance(result, WsAuthError):
            print(f"{provider.value}: {result}", file=sys.stderr)
            rc = max(rc, exit_code(result))
            continue
        for failure in result.partial_failures:
            print(f"{provider.value}: {failure.account} ({failure.account_id}) skipped: {failure.reason}", file=sys.stderr)
        print(f"{provider.value}: {len(result.bindings)} account(s), {len(result.partial_failures)} skipped")
    for path, merged in report.merges:
        if isinstance(merged, WsAuthError):
            report_error(merged)
            rc = max(rc, EXIT_FAILURE)
        else:
            print(merged.summary())
    return rc


def cmd_registries(core: AuthCore, args) -> int:
    rc = EXIT_OK
    for path, merged in core.configure_registries():
        if isinstance(merged, WsAuthError):
            report_error(merged)
            rc = EXIT_FAILURE
        else:
            print(merged.summary())
    return rc


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "token": cmd_token,
    "sso": cmd_sso,
    "registries": cmd_registries,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # keep stderr quiet for exec plugins unless asked
    setup_logging(args.log_level or ("WARNING" if args.command == "token" else "INFO"))
    try:
        settings = load_settings(args.config, args.section, settings_overrides(args))
        needs_oidc = args.command != "sso" or not args.providers or Provider.PLATFORM in args.providers
        settings.validate(require_oidc=needs_oidc and args.command != "registries")
        core = AuthCore(settings, Context(environment=settings.environment, organization=args.organization))
        return COMMANDS[args.command](core, args)
    except WsAuthError as e:
        report_error(e)
        return exit_code(e)


if __name__ == "__main__":
    sys.exit(main())
