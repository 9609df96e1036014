import pytest

from wsauth import config
from wsauth.config import DEFAULT_SCOPES, Settings, load_settings, resolve_passphrase
from wsauth.errors import ConfigError


def _ini(tmp_path, text, name="wsauth.ini"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


# Test intent: explicit (CLI) values override the INI file, which overrides
# built-in defaults.
def test_precedence_cli_over_ini_over_defaults(tmp_path):
    path = _ini(tmp_path, "[DEFAULT]\nclient_id = ini-client\ndiscovery_uri = https://ini/.well-known\n")

    settings = load_settings(path, overrides={"client_id": "cli-client", "audience": None}, environ={})

    assert settings.client_id == "cli-client"
    assert settings.discovery_uri == "https://ini/.well-known"
    assert settings.audience is None
    assert settings.login_timeout == 300
    assert settings.source == path


# Test intent: the environment variable names the INI path when --config is
# absent, and --config wins when both are set.
def test_config_path_from_env_and_cli(tmp_path):
    env_ini = _ini(tmp_path, "[DEFAULT]\ncli_name = from-env\n", "env.ini")
    cli_ini = _ini(tmp_path, "[DEFAULT]\ncli_name = from-cli\n", "cli.ini")

    assert load_settings(environ={"WSAUTH_CONFIG": env_ini}).cli_name == "from-env"
    assert load_settings(cli_ini, environ={"WSAUTH_CONFIG": env_ini}).cli_name == "from-cli"


# Test intent: a section named after the environment is selected over DEFAULT,
# and an explicit --section overrides both.
def test_section_selection(tmp_path):
    path = _ini(tmp_path, (
        "[DEFAULT]\nclient_id = default-client\nsafety_margin = 30\n"
        "[staging]\nclient_id = staging-client\n"
        "[custom]\nclient_id = custom-client\n"
    ))

    assert load_settings(path, environ={}).client_id == "default-client"
    staging = load_settings(path, overrides={"environment": "staging"}, environ={})
    assert staging.client_id == "staging-client"
    assert staging.safety_margin == 30
    assert staging.environment == "staging"
    assert load_settings(path, section="custom", environ={}).client_id == "custom-client"
    with pytest.raises(ConfigError):
        load_settings(path, section="missing", environ={})


# Test intent: an explicitly named config file that does not exist is a
# configuration error, while a missing auto-discovered file is not.
def test_missing_explicit_file_is_error(tmp_path, monkeypatch):
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path / "nope.ini"), environ={})

    monkeypatch.setitem(config.DEFAULTS, "config_dir", str(tmp_path / "home"))
    settings = load_settings(environ={})
    assert settings.source is None
    assert settings.client_id is None


# Test intent: INI strings are cast to the setting's type, and invalid values
# are reported as configuration errors.
def test_casts(tmp_path):
    path = _ini(tmp_path, (
        "[DEFAULT]\nscopes = openid, email profile\naws_regions = us-east-1 eu-west-1\n"
        "redirect_port = 9000\npassphrase_prompt = yes\n"
    ))

    settings = load_settings(path, environ={})

    assert settings.scopes == ("openid", "email", "profile")
    assert settings.aws_regions == ("us-east-1", "eu-west-1")
    assert settings.eks_regions() == ("us-east-1", "eu-west-1")
    assert settings.redirect_port == 9000
    assert settings.passphrase_prompt is True

    bad = _ini(tmp_path, "[DEFAULT]\nlogin_timeout = soon\n", "bad.ini")
    with pytest.raises(ConfigError):
        load_settings(bad, environ={})


# Test intent: validation requires the OIDC client settings and rejects
# non-HTTP URLs and unknown choices.
def test_validate():
    with pytest.raises(ConfigError) as ei:
        Settings().validate()
    assert "client_id" in str(ei.value)
    Settings().validate(require_oidc=False)

    ok = Settings(client_id="c", discovery_uri="https://idp/.well-known/openid-configuration")
    assert ok.validate() is ok
    assert ok.scopes == DEFAULT_SCOPES

    with pytest.raises(ConfigError):
        Settings(client_id="c", discovery_uri="idp.example.com").validate()
    with pytest.raises(ConfigError):
        Settings(apps_uri="ftp://apps").validate(require_oidc=False)
    with pytest.raises(ConfigError):
        Settings(login_method="carrier-pigeon").validate(require_oidc=False)
    with pytest.raises(ConfigError):
        Settings(secret_backend="vault").validate(require_oidc=False)


# Test intent: the store passphrase comes from the prompt first, then the
# configured environment variable; otherwise records are not encrypted.
def test_resolve_passphrase(monkeypatch):
    monkeypatch.setattr(config.getpass, "getpass", lambda prompt: "typed")

    assert resolve_passphrase(Settings(passphrase_prompt=True, passphrase_env="PW"), {"PW": "env"}) == "typed"
    assert resolve_passphrase(Settings(passphrase_env="PW"), {"PW": "env"}) == "env"
    assert resolve_passphrase(Settings(passphrase_env="PW"), {}) is None
    assert resolve_passphrase(Settings(), {}) is None

    monkeypatch.setattr(config.getpass, "getpass", lambda prompt: "")
    assert resolve_passphrase(Settings(passphrase_prompt=True), {}) is None
