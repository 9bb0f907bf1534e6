import pytest

from bridge import BridgeTransport
from config import ClientConfig, create_transport

ENVIRONMENT = [
    "WHATSAPP_CONFIG",
    "WHATSAPP_AUTH_PATH",
    "WHATSAPP_BRIDGE_URL",
    "WHATSAPP_PHONE_NUMBER",
    "WHATSAPP_USE_PAIRING_CODE",
    "WHATSAPP_MAX_RECONNECT_ATTEMPTS",
    "WHATSAPP_RECONNECT_BACKOFF",
    "WHATSAPP_CONNECT_TIMEOUT",
    "WHATSAPP_VERSION",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for variable in ENVIRONMENT:
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "whatsapp:\n"
        "  auth_path: yaml_auth\n"
        "  max_reconnect_attempts: 2\n"
        "  version: 2.3000.1015901307\n"
        "  browser: [Acme, Firefox, '2.0']\n"
    )
    return str(path)


def test_defaults(tmp_path):
    config = ClientConfig.from_environment(config_path=str(tmp_path / "missing.yaml"))

    assert config.auth_path == "auth_info_baileys"
    assert config.bridge_url == "http://localhost:8080/api"
    assert config.max_reconnect_attempts == 5
    assert config.use_pairing_code is False
    assert config.version is None
    assert config.log_level == "INFO"


def test_yaml_config(config_file):
    config = ClientConfig.from_environment(config_path=config_file)

    assert config.auth_path == "yaml_auth"
    assert config.max_reconnect_attempts == 2
    assert config.version == (2, 3000, 1015901307)
    assert config.browser == ("Acme", "Firefox", "2.0")


def test_environment_overrides_yaml(monkeypatch, config_file):
    monkeypatch.setenv("WHATSAPP_AUTH_PATH", "env_auth")
    monkeypatch.setenv("WHATSAPP_USE_PAIRING_CODE", "yes")
    monkeypatch.setenv("WHATSAPP_PHONE_NUMBER", "94770000000")
    monkeypatch.setenv("WHATSAPP_MAX_RECONNECT_ATTEMPTS", "unlimited")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = ClientConfig.from_environment(config_path=config_file)

    assert config.auth_path == "env_auth"
    assert config.use_pairing_code is True
    assert config.phone_number == "94770000000"
    assert config.max_reconnect_attempts is None
    assert config.log_level == "DEBUG"


def test_overrides_win(monkeypatch, config_file):
    monkeypatch.setenv("WHATSAPP_AUTH_PATH", "env_auth")

    config = ClientConfig.from_environment(config_path=config_file, auth_path="cli_auth", connect_timeout="5")

    assert config.auth_path == "cli_auth"
    assert config.connect_timeout == 5.0


def test_config_path_from_environment(monkeypatch, config_file):
    monkeypatch.setenv("WHATSAPP_CONFIG", config_file)

    assert ClientConfig.from_environment().auth_path == "yaml_auth"


def test_unknown_yaml_option_is_ignored(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("whatsapp:\n  auth_path: yaml_auth\n  colour: blue\n")

    assert ClientConfig.from_environment(config_path=str(path)).auth_path == "yaml_auth"


def test_invalid_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("whatsapp: [unclosed\n")

    assert ClientConfig.from_environment(config_path=str(path)).auth_path == "auth_info_baileys"


@pytest.mark.parametrize(
    "variable,value",
    [
        ("WHATSAPP_USE_PAIRING_CODE", "maybe"),
        ("WHATSAPP_RECONNECT_BACKOFF", "fast"),
        ("WHATSAPP_VERSION", "2.3000"),
        ("WHATSAPP_CONNECT_TIMEOUT", "0"),
    ],
)
def test_invalid_environment_values(monkeypatch, tmp_path, variable, value):
    monkeypatch.setenv(variable, value)

    with pytest.raises(ValueError):
        ClientConfig.from_environment(config_path=str(tmp_path / "missing.yaml"))


def test_constructor_validation():
    with pytest.raises(ValueError):
        ClientConfig(auth_path="")
    with pytest.raises(ValueError):
        ClientConfig(max_reconnect_attempts=-1)
    with pytest.raises(ValueError):
        ClientConfig(reconnect_backoff=-1)


def test_create_transport():
    transport = create_transport(ClientConfig(bridge_url="http://bridge:9000/api/"))

    assert isinstance(transport, BridgeTransport)
    assert transport.base_url == "http://bridge:9000/api"
