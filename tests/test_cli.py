import json
from datetime import datetime, timezone
from unittest import mock

import pytest

from wsauth import cli, config
from wsauth.core import SyncReport
from wsauth.errors import ConfigError, ReauthRequired, TransientNetworkError
from wsauth.merge import MergeReport
from wsauth.models import (
    CENTRAL_DOMAIN,
    CloudAccountBinding,
    LoginCancelled,
    LoginSuccess,
    LoginTimedOut,
    PartialFailure,
    Provider,
    SynthesisResult,
    TokenRecord,
)

OIDC_ARGS = ["--client-id", "cid", "--discovery-uri", "https://idp/.well-known/openid-configuration"]
RECORD = TokenRecord(identity_domain="oidc", subject="default", access_token="the-token", refresh_token="rt",
                     expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.delenv("WSAUTH_CONFIG", raising=False)
    monkeypatch.setitem(config.DEFAULTS, "config_dir", str(tmp_path / "home"))


@pytest.fixture
def core(monkeypatch):
    fake = mock.Mock()
    fake.central_domain.return_value = CENTRAL_DOMAIN
    created = []

    def factory(settings, context):
        fake.settings = settings
        created.append(context)
        return fake

    monkeypatch.setattr(cli, "AuthCore", factory)
    fake.created = created
    return fake


# Test intent: `token` prints the raw access token on stdout and nothing else.
def test_token_raw(core, capsys):
    core.ensure_authenticated.return_value = RECORD

    assert cli.main(OIDC_ARGS + ["token"]) == cli.EXIT_OK
    assert capsys.readouterr().out == "the-token\n"


# Test intent: the k8s-auth output is an ExecCredential JSON document.
def test_token_k8s_auth(core, capsys):
    core.exec_credential.return_value = {"kind": "ExecCredential", "status": {"token": "the-token"}}

    assert cli.main(OIDC_ARGS + ["--org", "acme", "token", "--output", "k8s-auth"]) == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["status"]["token"] == "the-token"
    assert core.created[0].organization == "acme"


# Test intent: a token that needs a new login exits with the re-auth code and
# tells the user what to do.
def test_reauth_exit_code(core, capsys):
    core.ensure_authenticated.side_effect = ReauthRequired("oidc", "no token", "run `wsauth login`")

    assert cli.main(OIDC_ARGS + ["token"]) == cli.EXIT_REAUTH
    err = capsys.readouterr().err
    assert "run `wsauth login`" in err
    assert "log in again" in err


# Test intent: an unreachable provider is a generic failure, not a re-auth.
def test_transient_exit_code(core, capsys):
    core.ensure_authenticated.side_effect = TransientNetworkError("https://idp", "connection reset")

    assert cli.main(OIDC_ARGS + ["whoami"]) == cli.EXIT_FAILURE
    assert "retry later" in capsys.readouterr().err


# Test intent: missing OIDC settings are a configuration error before any
# network or store access.
def test_missing_oidc_settings(capsys):
    assert cli.main(["token"]) == cli.EXIT_CONFIG
    assert "client_id" in capsys.readouterr().err


# Test intent: login outcomes map to exit codes; a cancelled login exits 130.
@pytest.mark.parametrize(
    "outcome, code",
    [
        (LoginSuccess(RECORD), cli.EXIT_OK),
        (LoginCancelled(), cli.EXIT_CANCELLED),
        (LoginTimedOut(300), cli.EXIT_REAUTH),
    ],
)
def test_login_outcomes(core, capsys, outcome, code):
    core.login.return_value = outcome

    assert cli.main(OIDC_ARGS + ["login", "--browser"]) == code
    core.login.assert_called_once_with(method="browser", force=False)
    if code == cli.EXIT_OK:
        assert "Logged in to oidc" in capsys.readouterr().out


# Test intent: the sso command reports skipped accounts and written files, and
# AWS-only synchronization does not require OIDC client settings.
def test_sso_reports_partial_failures(core, capsys):
    binding = CloudAccountBinding(Provider.AWS, "111", "dev", "administrator")
    core.sync.return_value = SyncReport(
        results={Provider.AWS: SynthesisResult(Provider.AWS, (binding,), (PartialFailure("acct-333", "no roles assigned", "333"),))},
        merges=[("~/.aws/config", MergeReport("~/.aws/config", added=["profile sso-dev"], written=True))],
    )

    assert cli.main(["sso", "aws"]) == cli.EXIT_OK
    core.sync.assert_called_once_with([Provider.AWS])
    captured = capsys.readouterr()
    assert "acct-333 (333) skipped: no roles assigned" in captured.err
    assert "~/.aws/config: added profile sso-dev" in captured.out


# Test intent: a provider needing a login makes sso exit with the re-auth code.
def test_sso_provider_error(core, capsys):
    core.sync.return_value = SyncReport(results={Provider.AWS: ReauthRequired("aws-sso/wsauth", "no token")})

    assert cli.main(["sso", "aws"]) == cli.EXIT_REAUTH


# Test intent: registry configuration errors surface as configuration exits.
def test_registries_config_error(core, capsys):
    core.configure_registries.side_effect = ConfigError("an organization is required (--org)")

    assert cli.main(["registries"]) == cli.EXIT_CONFIG
    assert "--org" in capsys.readouterr().err


# Test intent: an unknown provider name is rejected by the argument parser.
def test_sso_unknown_provider():
    with pytest.raises(SystemExit):
        cli.main(["sso", "gcp"])
