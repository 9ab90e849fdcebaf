"""Driver configuration management.

Configuration is loaded from a single YAML file, by default
$SHIPYARD_HOME/config.yaml (~/.shipyard/config.yaml):

    state_file: /var/lib/shipyard/state.json
    max_workers: 4
    domain: shipyard.run
    exec_timeout: 300
    providers:
      container: mycompany.docker:ContainerProvider

Every key is optional. The resulting DriverConfig is passed explicitly to the
state store, graph builder, provider registry and scheduler; nothing reads
process-wide paths behind their back.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_DOMAIN = 'shipyard.run'
DEFAULT_EXEC_TIMEOUT = 300


class ConfigError(Exception):
    """Configuration error."""


def get_home_dir() -> Path:
    """Get the driver home directory.

    Resolution order:
    1. $SHIPYARD_HOME environment variable
    2. ~/.shipyard
    """
    if env_path := os.environ.get('SHIPYARD_HOME'):
        return Path(env_path)
    return Path.home() / '.shipyard'


def _default_workers() -> int:
    return os.cpu_count() or 4


@dataclass
class DriverConfig:
    """Settings for one reconciliation process.

    Attributes:
        home: Driver home directory (state, exec PID files)
        state_file: Persisted state snapshot (default: <home>/state/state.json)
        max_workers: Maximum concurrent provider calls
        domain: Domain suffix for resource handles
        exec_timeout: Seconds a non-daemon exec_local command may run
        providers: Plugin providers as {type: 'module:Class'}
    """
    home: Path = field(default_factory=get_home_dir)
    state_file: Optional[Path] = None
    max_workers: int = field(default_factory=_default_workers)
    domain: str = DEFAULT_DOMAIN
    exec_timeout: int = DEFAULT_EXEC_TIMEOUT
    providers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.home, str):
            self.home = Path(self.home)
        if self.state_file is None:
            self.state_file = self.home / 'state' / 'state.json'
        elif isinstance(self.state_file, str):
            self.state_file = Path(self.state_file)

        if isinstance(self.max_workers, bool) or not isinstance(self.max_workers, int) \
                or self.max_workers < 1:
            raise ConfigError(f"max_workers must be a positive integer, got {self.max_workers!r}")
        if isinstance(self.exec_timeout, bool) or not isinstance(self.exec_timeout, int) \
                or self.exec_timeout < 1:
            raise ConfigError(f"exec_timeout must be a positive integer, got {self.exec_timeout!r}")
        if not self.domain or not isinstance(self.domain, str):
            raise ConfigError("domain must be a non-empty string")
        if not isinstance(self.providers, dict):
            raise ConfigError("providers must be a mapping of type to 'module:Class'")

    @property
    def exec_dir(self) -> Path:
        """Directory for exec_local PID files."""
        return self.home / 'exec'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(config_file: Optional[Path] = None, home: Optional[Path] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        config_file: Explicit config path. Must exist if given.
        home: Override home directory (default: get_home_dir())

    Returns:
        DriverConfig with file values applied over defaults

    Raises:
        ConfigError: If the file is missing, malformed, or has invalid values
    """
    home = Path(home) if home else get_home_dir()

    if config_file is not None:
        path = Path(config_file)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = home / 'config.yaml'
        if not path.exists():
            return DriverConfig(home=home)

    try:
        data = _parse_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a YAML object (dict)")

    unknown = set(data) - {'home', 'state_file', 'max_workers', 'domain',
                           'exec_timeout', 'providers'}
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")

    kwargs = {k: v for k, v in data.items() if v is not None}
    kwargs.setdefault('home', home)
    return DriverConfig(**kwargs)
