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

"""OpenID Connect client: discovery, refresh exchange and the interactive handshakes.

Both handshakes (device code and browser authorization code + PKCE) return a
tagged ``LoginOutcome`` instead of raising for the expected endings (user
cancelled, timed out, provider refused). They never touch the secret store;
the caller hands a successful record to the token repository.
"""

import base64
import hashlib
import json
import logging
import os
import secrets
import sys
import threading
import time
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from .config import Settings
from .errors import ProviderRejected, RefreshRejected, TransientNetworkError
from .models import (
    IdentityDomain,
    LoginCancelled,
    LoginOutcome,
    LoginRejected,
    LoginSuccess,
    LoginTimedOut,
    TokenRecord,
    utcnow,
)

LOG = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
CALLBACK_PATH = "/callback"
# transient statuses are the caller's to retry, never ours
TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


# ---------- JWT helpers ----------

def decode_jwt_claims(token_str: Optional[str]) -> Dict[str, Any]:
    """Return the unverified payload of a JWT, or {} when it is not one."""
    if not token_str:
        return {}
    try:
        parts = token_str.split(".")
        if len(parts) < 2:
            return {}
        payload_b64 = parts[1]
        pad = "=" * (-len(payload_b64) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + pad))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def decode_jwt_exp(token_str: Optional[str]) -> Optional[datetime]:
    exp = decode_jwt_claims(token_str).get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return None
    return datetime.fromtimestamp(int(exp), tz=timezone.utc)


def pkce_pair() -> Tuple[str, str]:
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode().rstrip("=")
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    return verifier, challenge


def acr_values(scopes: Iterable[str], organization_id: Optional[str] = None) -> str:
    values = []
    if organization_id:
        values.append(f"urn:auth:acr:organization-id:{organization_id}")
    values.extend(f"urn:auth:acr:scope:{scope}" for scope in sorted(set(scopes)))
    return " ".join(values)


def claims_mismatch(claims: Mapping[str, Any], desired: Mapping[str, Any]) -> Optional[str]:
    """Name of the first desired claim the token does not carry, else None."""
    for name, value in desired.items():
        if value is not None and claims.get(name) != value:
            return f"missing desired claim {name}"
    return None


def token_record_from_response(
    domain: IdentityDomain,
    tok: Mapping[str, Any],
    previous: Optional[TokenRecord] = None,
    now: Optional[datetime] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> TokenRecord:
    """Build a TokenRecord from a standard token-endpoint response.

    A response without a refresh token keeps the previous one; the expiry comes
    from ``expires_in`` when present, else the access token's ``exp`` claim,
    else the record is considered already expired.
    """
    now = now or utcnow()
    access_token = tok["access_token"]
    expires_in = tok.get("expires_in")
    if expires_in is not None:
        expires_at = now + timedelta(seconds=int(expires_in))
    else:
        expires_at = decode_jwt_exp(access_token) or now
    if tok.get("scope"):
        scopes = frozenset(str(tok["scope"]).split())
    else:
        scopes = previous.scopes if previous else frozenset()
    merged = dict(previous.metadata) if previous else {}
    merged.update(metadata or {})
    return TokenRecord(
        identity_domain=domain.name,
        subject=domain.subject,
        access_token=access_token,
        refresh_token=tok.get("refresh_token") or (previous.refresh_token if previous else None),
        id_token=tok.get("id_token") or (previous.id_token if previous else None),
        expires_at=expires_at,
        scopes=scopes,
        metadata=merged,
    )


# ---------- HTTP ----------

def _request_json(http: requests.Session, method: str, url: str, timeout: float, **kwargs) -> Tuple[int, Dict[str, Any]]:
    try:
        resp = http.request(method, url, timeout=timeout, **kwargs)
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientNetworkError(url, str(e)) from e
    if resp.status_code in TRANSIENT_STATUSES:
        raise TransientNetworkError(url, f"HTTP {resp.status_code}")
    try:
        body = resp.json()
    except ValueError:
        if resp.status_code >= 400:
            raise ProviderRejected(f"{url} responded with HTTP {resp.status_code}")
        raise ProviderRejected(f"{url} returned a non-JSON response")
    if not isinstance(body, dict):
        raise ProviderRejected(f"{url} returned an unexpected payload")
    return resp.status_code, body


def oauth_error(body: Mapping[str, Any]) -> str:
    return f"{body.get('error', 'error')}: {body.get('error_description', '')}".rstrip(": ")


@dataclass(frozen=True)
class OpenIdConfiguration:
    issuer: str
    token_endpoint: str
    authorization_endpoint: Optional[str] = None
    device_authorization_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None

    @classmethod
    def discover(cls, http: requests.Session, discovery_uri: str, timeout: float = 30) -> "OpenIdConfiguration":
        LOG.debug("Fetching OpenID configuration from %s", discovery_uri)
        status, doc = _request_json(http, "GET", discovery_uri, timeout)
        if status >= 400 or "token_endpoint" not in doc:
            raise ProviderRejected(f"invalid OpenID configuration at {discovery_uri} (HTTP {status})")
        return cls(
            issuer=doc.get("issuer", ""),
            token_endpoint=doc["token_endpoint"],
            authorization_endpoint=doc.get("authorization_endpoint"),
            device_authorization_endpoint=doc.get("device_authorization_endpoint"),
            userinfo_endpoint=doc.get("userinfo_endpoint"),
            jwks_uri=doc.get("jwks_uri"),
        )


class OidcClient:
    def __init__(self, settings: Settings, http: Optional[requests.Session] = None,
                 configuration: Optional[OpenIdConfiguration] = None):
        self.settings = settings
        self.http = http or requests.Session()
        self._configuration = configuration
        self._lock = threading.Lock()

    @property
    def configuration(self) -> OpenIdConfiguration:
        with self._lock:
            if self._configuration is None:
                self._configuration = OpenIdConfiguration.discover(
                    self.http, self.settings.discovery_uri, self.settings.http_timeout
                )
            return self._configuration

    def base_form(self) -> Dict[str, str]:
        form = {"client_id": self.settings.client_id}
        if self.settings.audience:
            form["audience"] = self.settings.audience
        return form

    def post_token(self, data: Mapping[str, str]) -> Tuple[int, Dict[str, Any]]:
        return _request_json(
            self.http, "POST", self.configuration.token_endpoint, self.settings.http_timeout, data=dict(data)
        )

    def refresh(self, record: TokenRecord) -> TokenRecord:
        """One refresh-token exchange. Raises RefreshRejected or TransientNetworkError."""
        if not record.refresh_token:
            raise RefreshRejected("no refresh token")
        data = self.base_form()
        data.update({"grant_type": "refresh_token", "refresh_token": record.refresh_token})
        if record.metadata.get("acr_values"):
            data["acr_values"] = record.metadata["acr_values"]
        status, body = self.post_token(data)
        if status >= 400 or "error" in body:
            raise RefreshRejected(oauth_error(body))
        if "access_token" not in body:
            raise RefreshRejected("token endpoint did not return an access_token")
        domain = IdentityDomain(record.identity_domain, record.subject)
        return token_record_from_response(domain, body, previous=record)

    def fetch_json(self, url: str, bearer: str) -> Any:
        """GET a JSON resource with a bearer token; used by the platform app catalogue."""
        try:
            resp = self.http.get(url, headers={"Authorization": f"Bearer {bearer}"},
                                 timeout=self.settings.http_timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientNetworkError(url, str(e)) from e
        if resp.status_code in TRANSIENT_STATUSES:
            raise TransientNetworkError(url, f"HTTP {resp.status_code}")
        if resp.status_code == 401:
            raise ProviderRejected(f"{url}: unauthorized; run `{self.settings.cli_name} login`")
        if resp.status_code >= 400:
            raise ProviderRejected(f"{url} responded with HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderRejected(f"{url} returned a non-JSON response") from e


# ---------- Interactive handshakes ----------

def _stderr_prompt(message: str) -> None:
    print(message, file=sys.stderr, flush=True)


def open_browser(url: str) -> None:
    try:
        if not webbrowser.open(url):
            LOG.warning("Could not launch a browser; manually open %s", url)
    except webbrowser.Error:
        LOG.warning("Browser open failed; manually open %s", url)


class _Handshake:
    def __init__(self, client: OidcClient, timeout: float,
                 prompt: Callable[[str], None] = _stderr_prompt,
                 browser: Callable[[str], None] = open_browser,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.timeout = timeout
        self.prompt = prompt
        self.browser = browser
        self.sleep = sleep
        self.clock = clock

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> bool:
        """Sleep ``seconds``; True when the cancel event fired meanwhile."""
        if cancel_event is not None:
            return cancel_event.wait(seconds)
        self.sleep(seconds)
        return False

    def run(self, domain: IdentityDomain, scopes: Iterable[str],
            extra_params: Optional[Mapping[str, str]] = None,
            cancel_event: Optional[threading.Event] = None) -> LoginOutcome:
        try:
            return self._run(domain, " ".join(sorted(set(scopes))), dict(extra_params or {}), cancel_event)
        except KeyboardInterrupt:
            return LoginCancelled("interrupted")

    def _run(self, domain, scope, extra, cancel_event) -> LoginOutcome:
        raise NotImplementedError

    def _success(self, domain: IdentityDomain, body: Mapping[str, Any], extra: Mapping[str, str]) -> LoginOutcome:
        metadata = {"acr_values": extra["acr_values"]} if extra.get("acr_values") else {}
        return LoginSuccess(token_record_from_response(domain, body, metadata=metadata))


class DeviceCodeFlow(_Handshake):
    """RFC 8628 device authorization grant."""

    def _run(self, domain, scope, extra, cancel_event) -> LoginOutcome:
        endpoint = self.client.configuration.device_authorization_endpoint
        if not endpoint:
            return LoginRejected("identity provider does not offer device authorization")
        form = self.client.base_form()
        form["scope"] = scope
        form.update(extra)
        LOG.debug("Requesting device code from %s", endpoint)
        status, device = _request_json(self.client.http, "POST", endpoint,
                                       self.client.settings.http_timeout, data=form)
        if status >= 400 or "error" in device or "device_code" not in device:
            return LoginRejected(oauth_error(device) if "error" in device else f"device authorization failed (HTTP {status})")

        url = (device.get("verification_uri_complete") or device.get("verification_uri")
               or device.get("verification_url"))
        if not url:
            return LoginRejected("device authorization response has no verification URL")
        self.prompt(f"\nFirst copy your one-time code: {device.get('user_code', '')}\n")
        self.prompt(f"Opening {url} in your browser...")
        self.browser(url)
        self.prompt("Waiting for approval...\n")

        interval = float(device.get("interval") or 5)
        budget = float(self.timeout)
        if device.get("expires_in"):
            budget = min(budget, float(device["expires_in"]))
        started = self.clock()
        poll = self.client.base_form()
        poll.update({"grant_type": DEVICE_CODE_GRANT, "device_code": device["device_code"]})

        while True:
            if self._wait(interval, cancel_event):
                return LoginCancelled()
            waited = self.clock() - started
            if waited >= budget:
                return LoginTimedOut(waited)
            _, body = self.client.post_token(poll)
            if "access_token" in body:
                return self._success(domain, body, extra)
            error = body.get("error")
            if error == "authorization_pending":
                LOG.debug("Access token not yet available. Will try again in %s seconds.", interval)
            elif error == "slow_down":
                interval += 5
            elif error == "expired_token":
                return LoginTimedOut(waited)
            elif error == "access_denied":
                return LoginCancelled("access denied at the identity provider")
            else:
                return LoginRejected(oauth_error(body))


class CodeHandler(BaseHTTPRequestHandler):
    server_version = "CodeHandler/1.0"

    def do_GET(self):
        parsed = urlparse(self.path)
        allowed_path = getattr(self.server, "callback_path", CALLBACK_PATH)
        if parsed.path != allowed_path:
            self.send_response(404)
            self.end_headers()
            return
        q = parse_qs(parsed.query)
        self.server.captured = {k: q.get(k, [None])[0] for k in ("code", "state", "error", "error_description")}
        self.send_response(200)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(b"<html><body>Authentication complete. You can close this window.</body></html>")

    def log_message(self, fmt, *args):
        # silence default HTTP server log
        return


class CodeServer(HTTPServer):
    def __init__(self, host, port, callback_path):
        super().__init__((host, port), CodeHandler)
        self.callback_path = callback_path
        self.captured = None


class AuthorizationCodeFlow(_Handshake):
    """Browser login: authorization code grant with PKCE (S256) and a loopback redirect."""

    poll_seconds = 0.2

    def _run(self, domain, scope, extra, cancel_event) -> LoginOutcome:
        authz_url = self.client.configuration.authorization_endpoint
        if not authz_url:
            return LoginRejected("identity provider does not offer an authorization endpoint")
        verifier, challenge = pkce_pair()
        state = base64.urlsafe_b64encode(os.urandom(18)).decode().rstrip("=")
        port = self.client.settings.redirect_port
        redirect_uri = f"http://127.0.0.1:{port}{CALLBACK_PATH}"

        try:
            server = CodeServer("127.0.0.1", port, CALLBACK_PATH)
        except OSError as e:
            return LoginRejected(f"cannot listen on 127.0.0.1:{port}: {e}")
        th =threading.Thread(target=server.serve_forever, daemon=True)
        th.start()
        try:
            params = self.client.base_form()
            params.update({
                "response_type": "code",
                "redirect_uri": redirect_uri,
                "scope": scope,
                "state": state,
                "code_challenge": challenge,
                "code_challenge_method": "S256",
            })
            params.update(extra)
            auth_url = authz_url + "?" + urlencode(params)
            self.prompt(f"Opening browser for authorization: {auth_url}")
            self.browser(auth_url)
            LOG.info("Waiting for authorization response at %s", redirect_uri)

            started = self.clock()
            while server.captured is None:
                if self._wait(self.poll_seconds, cancel_event):
                    return LoginCancelled()
                waited = self.clock() - started
                if waited >= self.timeout:
                    return LoginTimedOut(waited)
            captured = server.captured
        finally:
            server.shutdown()
            server.server_close()

        if captured.get("error") == "access_denied":
            return LoginCancelled("access denied at the identity provider")
        if captured.get("error"):
            return LoginRejected(oauth_error(captured))
        if not captured.get("code") or captured.get("state") != state:
            return LoginRejected("authorization failed or state mismatch")

        data = self.client.base_form()
        data.update({
            "grant_type": "authorization_code",
            "code": captured["code"],
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
        })
        status, body = self.client.post_token(data)
        if status >= 400 or "error" in body or "access_token" not in body:
            return LoginRejected(oauth_error(body) if "error" in body else "token endpoint did not return an access_token")
        return self._success(domain, body, extra)


def make_login_flow(client: OidcClient, method: Optional[str] = None, **kwargs) -> _Handshake:
    method = method or client.settings.login_method
    flow_cls = AuthorizationCodeFlow if method == "browser" else DeviceCodeFlow
    return flow_cls(client, timeout=client.settings.login_timeout, **kwargs)
