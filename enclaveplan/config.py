"""
Configuration management for enclaveplan.

Loads and validates config.yaml from the enclaveplan home directory
(ENCLAVEPLAN_HOME, default ~/.config/enclaveplan).
"""

import ipaddress
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from enclaveplan.errors import ConfigError

CONFIG_FILENAME = "config.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("structured", "pretty")


def get_enclaveplan_home() -> Path:
    """Return the enclaveplan home directory, honouring ENCLAVEPLAN_HOME."""
    home = os.environ.get("ENCLAVEPLAN_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/enclaveplan").expanduser()


@dataclass
class EnclaveConfig:
    """
    Settings for one enclave's plan engine.

    Attributes:
        subnet: CIDR the enclave allocates service IPs from
        partitioning_enabled: Whether Repartition instructions are allowed
        validator_max_workers: Parallel image checks during validation
        package_id: Package identifier used when a run names none
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "structured" (JSON) or "pretty" (rich console)
        log_file: Optional log file path
        modules_dir: Root directory for load()/import_module() locators
        allowed_backend_modules: Module prefixes the CLI may load backends from
    """
    subnet: str = "10.0.0.0/16"
    partitioning_enabled: bool = True
    validator_max_workers: int = 4
    package_id: str = "main"
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    modules_dir: Optional[str] = None
    allowed_backend_modules: list[str] = field(default_factory=lambda: ["enclaveplan_backends"])

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Validate every setting.

        Raises:
            ConfigError: If a value is invalid
        """
        try:
            ipaddress.IPv4Network(self.subnet, strict=False)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid subnet '{self.subnet}': {e}")
        if not isinstance(self.partitioning_enabled, bool):
            raise ConfigError("partitioning_enabled must be a boolean")
        if not isinstance(self.validator_max_workers, int) or self.validator_max_workers < 1:
            raise ConfigError(
                f"validator_max_workers must be a positive integer, got {self.validator_max_workers!r}"
            )
        if not self.package_id:
            raise ConfigError("package_id cannot be empty")
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ConfigError(f"Invalid log_level '{self.log_level}'; expected one of {', '.join(LOG_LEVELS)}")
        self.log_level = str(self.log_level).upper()
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"Invalid log_format '{self.log_format}'; expected one of {', '.join(LOG_FORMATS)}")
        if not isinstance(self.allowed_backend_modules, list):
            raise ConfigError("allowed_backend_modules must be a list of module prefixes")

    def get_modules_dir(self) -> Optional[Path]:
        if self.modules_dir is None:
            return None
        return Path(self.modules_dir).expanduser()

    def get_log_file_path(self) -> Optional[Path]:
        if self.log_file is None:
            return None
        return Path(self.log_file).expanduser()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnclaveConfig":
        """
        Build a config from parsed YAML.

        Raises:
            ConfigError: If the data has unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(config_path: Optional[Path] = None) -> EnclaveConfig:
    """
    Load enclaveplan configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config.yaml in the
            enclaveplan home; a missing default file yields the defaults.

    Returns:
        EnclaveConfig instance

    Raises:
        FileNotFoundError: If an explicitly given config file does not exist
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_enclaveplan_home() / CONFIG_FILENAME
        if not config_path.exists():
            return EnclaveConfig()
    elif not config_path.exists():
        raise FileNotFoundError(f"enclaveplan config file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if data is None:
        return EnclaveConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")
    return EnclaveConfig.from_dict(data)
