import pytest
import yaml
from pathlib import Path

from enclaveplan.config import EnclaveConfig, get_enclaveplan_home, load_config
from enclaveplan.errors import ConfigError


def test_get_enclaveplan_home_default(monkeypatch):
    monkeypatch.delenv("ENCLAVEPLAN_HOME", raising=False)
    assert get_enclaveplan_home() == Path("~/.config/enclaveplan").expanduser()


def test_get_enclaveplan_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("ENCLAVEPLAN_HOME", str(custom_home))
    assert get_enclaveplan_home() == custom_home


def test_load_config_missing_default_file_gives_defaults(isolated_home):
    config = load_config()

    assert config == EnclaveConfig()
    assert config.subnet == "10.0.0.0/16"
    assert config.partitioning_enabled is True
    assert config.package_id == "main"


def test_load_config_valid(isolated_home):
    isolated_home.mkdir(parents=True)
    config_data = {
        "subnet": "172.16.0.0/24",
        "partitioning_enabled": False,
        "validator_max_workers": 8,
        "log_level": "debug",
        "modules_dir": "~/enclave-modules",
    }
    (isolated_home / "config.yaml").write_text(yaml.dump(config_data))

    config = load_config()

    assert config.subnet == "172.16.0.0/24"
    assert config.partitioning_enabled is False
    assert config.validator_max_workers == 8
    assert config.log_level == "DEBUG"
    assert config.get_modules_dir() == Path("~/enclave-modules").expanduser()


def test_load_config_explicit_path(tmp_path):
    config_path = tmp_path / "custom.yaml"
    config_path.write_text(yaml.dump({"package_id": "demo"}))

    assert load_config(config_path).package_id == "demo"


def test_load_config_missing_explicit_path(tmp_path):
    with pytest.raises(FileNotFoundError, match="enclaveplan config file not found"):
        load_config(tmp_path / "nope.yaml")


def test_load_config_empty_file(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("")

    assert load_config(config_path) == EnclaveConfig()


def test_load_config_invalid_yaml(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("subnet: [unclosed")

    with pytest.raises(ConfigError, match="Invalid YAML syntax"):
        load_config(config_path)


def test_load_config_not_a_mapping(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_config(config_path)


def test_unknown_keys_rejected():
    with pytest.raises(ConfigError, match="Unknown configuration keys: colour, project"):
        EnclaveConfig.from_dict({"project": "x", "colour": "blue"})


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"subnet": "not-a-subnet"}, "Invalid subnet"),
        ({"validator_max_workers": 0}, "validator_max_workers"),
        ({"package_id": ""}, "package_id cannot be empty"),
        ({"log_level": "LOUD"}, "Invalid log_level"),
        ({"log_format": "xml"}, "Invalid log_format"),
        ({"partitioning_enabled": "yes"}, "partitioning_enabled"),
    ],
)
def test_invalid_values(overrides, message):
    with pytest.raises(ConfigError, match=message):
        EnclaveConfig(**overrides)


def test_to_dict_round_trip():
    config = EnclaveConfig(subnet="192.168.0.0/24", log_file="~/logs/enclave.log")

    assert EnclaveConfig.from_dict(config.to_dict()) == config
    assert config.get_log_file_path() == Path("~/logs/enclave.log").expanduser()
