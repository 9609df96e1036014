import base64
import json
import threading
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
import requests

from wsauth.config import Settings
from wsauth.errors import ProviderRejected, RefreshRejected, TransientNetworkError
from wsauth.models import IdentityDomain, LoginCancelled, LoginRejected, LoginSuccess, LoginTimedOut, TokenRecord
from wsauth.openid import (
    DEVICE_CODE_GRANT,
    AuthorizationCodeFlow,
    DeviceCodeFlow,
    OidcClient,
    OpenIdConfiguration,
    make_login_flow,
    token_record_from_response,
)

DOMAIN = IdentityDomain("oidc")
NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
CONFIGURATION = OpenIdConfiguration(
    issuer="https://idp.example.com/",
    token_endpoint="https://idp.example.com/oauth/token",
    authorization_endpoint="https://idp.example.com/authorize",
    device_authorization_endpoint="https://idp.example.com/oauth/device/code",
)


def _settings(**kw):
    kw.setdefault("client_id", "cid")
    kw.setdefault("discovery_uri", "https://idp.example.com/.well-known/openid-configuration")
    return Settings(**kw)


def _resp(status=200, body=None):
    r = mock.Mock(status_code=status, text=json.dumps(body))
    if body is None:
        r.json.side_effect = ValueError("no json")
    else:
        r.json.return_value = body
    return r


def _client(*responses, **settings):
    http = mock.Mock()
    http.request.side_effect = list(responses)
    return OidcClient(_settings(**settings), http=http, configuration=CONFIGURATION)


def _device_flow(client, timeout=300, clock=None, sleeps=None, prompts=None, opened=None):
    return DeviceCodeFlow(
        client,
        timeout=timeout,
        prompt=(prompts.append if prompts is not None else lambda m: None),
        browser=(opened.append if opened is not None else lambda u: None),
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
        clock=clock or (lambda: 0.0),
    )


DEVICE = {
    "device_code": "dev-123",
    "user_code": "ABCD-EFGH",
    "verification_uri_complete": "https://idp.example.com/activate?user_code=ABCD-EFGH",
    "expires_in": 900,
    "interval": 2,
}


def _make_jwt(claims):
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"e30.{payload}.sig"


# Test intent: the device flow shows the user code, opens the verification
# URL, keeps polling while authorization is pending and returns the token.
def test_device_flow_success_after_pending():
    client = _client(
        _resp(200, DEVICE),
        _resp(400, {"error": "authorization_pending"}),
        _resp(200, {"access_token": "at", "refresh_token": "rt", "expires_in": 3600, "scope": "openid email"}),
    )
    prompts, opened, sleeps = [], [], []

    outcome = _device_flow(client, prompts=prompts, opened=opened, sleeps=sleeps).run(DOMAIN, ["openid", "email"])

    assert isinstance(outcome, LoginSuccess)
    assert outcome.record.access_token == "at"
    assert outcome.record.refresh_token == "rt"
    assert outcome.record.scopes == frozenset({"openid", "email"})
    assert any("ABCD-EFGH" in p for p in prompts)
    assert opened == [DEVICE["verification_uri_complete"]]
    assert sleeps == [2.0, 2.0]

    device_call, poll_call, _ = client.http.request.call_args_list
    assert device_call.kwargs["data"]["scope"] == "email openid"
    assert poll_call.kwargs["data"]["grant_type"] == DEVICE_CODE_GRANT
    assert poll_call.kwargs["data"]["device_code"] == "dev-123"


# Test intent: slow_down increases the polling interval by five seconds.
def test_device_flow_slow_down():
    client = _client(
        _resp(200, DEVICE),
        _resp(400, {"error": "slow_down"}),
        _resp(200, {"access_token": "at", "expires_in": 60}),
    )
    sleeps = []

    outcome = _device_flow(client, sleeps=sleeps).run(DOMAIN, ["openid"])

    assert isinstance(outcome, LoginSuccess)
    assert sleeps == [2.0, 7.0]


# Test intent: provider-side endings of the handshake map to the matching
# tagged outcome instead of raising.
@pytest.mark.parametrize(
    "error, expected",
    [
        ("expired_token", LoginTimedOut),
        ("access_denied", LoginCancelled),
        ("invalid_client", LoginRejected),
    ],
)
def test_device_flow_terminal_errors(error, expected):
    client = _client(_resp(200, DEVICE), _resp(400, {"error": error, "error_description": "nope"}))

    outcome = _device_flow(client).run(DOMAIN, ["openid"])

    assert isinstance(outcome, expected)
    if expected is LoginRejected:
        assert "invalid_client" in outcome.reason


# Test intent: when the wait exceeds the login timeout the flow stops polling
# and reports a timeout.
def test_device_flow_times_out_without_polling():
    client = _client(_resp(200, DEVICE))
    ticks = iter([0.0, 301.0])

    outcome = _device_flow(client, timeout=300, clock=lambda: next(ticks)).run(DOMAIN, ["openid"])

    assert isinstance(outcome, LoginTimedOut)
    assert outcome.waited == 301.0
    assert client.http.request.call_count == 1


# Test intent: a cancel signal ends the wait with a cancelled outcome and
# nothing is returned for storage.
def test_device_flow_cancel_event():
    client = _client(_resp(200, DEVICE))
    cancel = threading.Event()
    cancel.set()

    outcome = _device_flow(client).run(DOMAIN, ["openid"], cancel_event=cancel)

    assert isinstance(outcome, LoginCancelled)


# Test intent: Ctrl-C while waiting is reported as a cancellation.
def test_device_flow_keyboard_interrupt():
    client = _client(_resp(200, DEVICE))

    def interrupted(seconds):
        raise KeyboardInterrupt

    flow = _device_flow(client)
    flow.sleep = interrupted

    assert isinstance(flow.run(DOMAIN, ["openid"]), LoginCancelled)


# Test intent: a provider without device authorization is a rejection, and a
# failed device-code request carries the provider's error.
def test_device_flow_rejections():
    no_device = OidcClient(_settings(), http=mock.Mock(),
                           configuration=OpenIdConfiguration(issuer="i", token_endpoint="t"))
    assert isinstance(_device_flow(no_device).run(DOMAIN, ["openid"]), LoginRejected)

    client = _client(_resp(400, {"error": "unauthorized_client", "error_description": "device grant disabled"}))
    outcome = _device_flow(client).run(DOMAIN, ["openid"])
    assert isinstance(outcome, LoginRejected)
    assert outcome.reason == "unauthorized_client: device grant disabled"


# Test intent: organization logins pass acr_values to the provider and keep
# them on the record so refreshes stay organization-scoped.
def test_device_flow_keeps_acr_values():
    client = _client(_resp(200, DEVICE), _resp(200, {"access_token": "at", "expires_in": 60}))

    outcome = _device_flow(client).run(DOMAIN, ["openid"], {"acr_values": "urn:x"})

    assert client.http.request.call_args_list[0].kwargs["data"]["acr_values"] == "urn:x"
    assert outcome.record.metadata == {"acr_values": "urn:x"}


def _record(**kw):
    base = dict(identity_domain="oidc", subject="default", access_token="at-old", refresh_token="rt-old",
                expires_at=NOW, id_token="idt-old")
    base.update(kw)
    return TokenRecord(**base)


# Test intent: refresh posts the refresh grant and keeps the old refresh
# token and id token when the provider does not rotate them.
def test_refresh_success_keeps_previous_tokens():
    client = _client(_resp(200, {"access_token": "at-new", "expires_in": 600}), audience="api://x")

    new = client.refresh(_record(metadata={"acr_values": "urn:x"}))

    assert new.access_token == "at-new"
    assert new.refresh_token == "rt-old"
    assert new.id_token == "idt-old"
    data = client.http.request.call_args.kwargs["data"]
    assert data == {"client_id": "cid", "audience": "api://x", "grant_type": "refresh_token",
                    "refresh_token": "rt-old", "acr_values": "urn:x"}


# Test intent: a refusal by the provider is RefreshRejected while network
# trouble and 5xx are TransientNetworkError.
def test_refresh_error_mapping():
    with pytest.raises(RefreshRejected) as ei:
        _client(_resp(400, {"error": "invalid_grant", "error_description": "revoked"})).refresh(_record())
    assert ei.value.reason == "invalid_grant: revoked"

    with pytest.raises(TransientNetworkError):
        _client(_resp(503, None)).refresh(_record())

    with pytest.raises(TransientNetworkError):
        _client(requests.ConnectionError("reset")).refresh(_record())

    with pytest.raises(ProviderRejected):
        _client(_resp(200, None)).refresh(_record())

    with pytest.raises(RefreshRejected):
        _client().refresh(_record(refresh_token=None))


# Test intent: discovery reads endpoints from the well-known document and
# rejects a document without a token endpoint.
def test_discovery():
    http = mock.Mock()
    http.request.return_value = _resp(200, {
        "issuer": "https://idp/",
        "token_endpoint": "https://idp/token",
        "device_authorization_endpoint": "https://idp/device",
    })
    client = OidcClient(_settings(), http=http)

    assert client.configuration.token_endpoint == "https://idp/token"
    assert client.configuration.device_authorization_endpoint == "https://idp/device"
    assert http.request.call_count == 1

    http.request.return_value = _resp(200, {"issuer": "x"})
    with pytest.raises(ProviderRejected):
        OpenIdConfiguration.discover(http, "https://idp/.well-known/openid-configuration")


# Test intent: expiry comes from expires_in, else the access token's exp claim.
def test_token_record_expiry_sources():
    exp = int((NOW + timedelta(minutes=5)).timestamp())

    from_expires_in = token_record_from_response(DOMAIN, {"access_token": "at", "expires_in": 60}, now=NOW)
    from_claim = token_record_from_response(DOMAIN, {"access_token": _make_jwt({"exp": exp})}, now=NOW)
    neither = token_record_from_response(DOMAIN, {"access_token": "opaque"}, now=NOW)

    assert from_expires_in.expires_at == NOW + timedelta(seconds=60)
    assert int(from_claim.expires_at.timestamp()) == exp
    assert neither.expires_at == NOW


# Test intent: fetch_json maps 401 to a rejection naming the login command.
def test_fetch_json_unauthorized():
    client = _client()
    client.http.get.return_value = _resp(401, {"error": "unauthorized"})

    with pytest.raises(ProviderRejected) as ei:
        client.fetch_json("https://apps", "at")
    assert "wsauth login" in str(ei.value)


# Test intent: the configured login method selects the handshake.
def test_make_login_flow():
    client = _client()

    assert isinstance(make_login_flow(client), DeviceCodeFlow)
    assert isinstance(make_login_flow(client, "browser"), AuthorizationCodeFlow)
    assert make_login_flow(client).timeout == 300


# Test intent: a loopback port that is already taken is a rejected login with
# the port in the reason, and no browser is opened.
def test_browser_flow_port_in_use():
    client = _client(redirect_port=8181)
    opened = []
    flow = AuthorizationCodeFlow(client, timeout=300, prompt=lambda m: None, browser=opened.append)

    with mock.patch("wsauth.openid.CodeServer", side_effect=OSError(98, "Address already in use")):
        outcome = flow.run(DOMAIN, ["openid"])

    assert isinstance(outcome, LoginRejected)
    assert outcome.reason.startswith("cannot listen on 127.0.0.1:8181:")
    assert opened == []
