"""Driver configuration management.

Configuration is loaded from a YAML file and the environment:
- deploy-driver.yaml: working directory, tool binary, template source,
  realtime server and client settings

Resolution order for the file:
1. path passed explicitly (CLI --config)
2. $DEPLOY_DRIVER_CONFIG environment variable
3. ./deploy-driver.yaml (dev workspace)

The merge order is: defaults → file → environment.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


DEFAULT_CONFIG_FILE = 'deploy-driver.yaml'

# Deployment names become directory names under the working directory
DEPLOYMENT_NAME_RE = re.compile(r'^[a-z0-9][a-z0-9_-]*$')


@dataclass
class ServerSettings:
    """Realtime server settings."""
    bind: str = '0.0.0.0'
    port: int = 5000
    path: str = '/ws'
    heartbeat_interval: float = 30.0
    heartbeat_timeout: float = 60.0
    session_queue_size: int = 1000


@dataclass
class ClientSettings:
    """Realtime client reconnect settings."""
    max_attempts: int = 5
    base_delay: float = 1.0


@dataclass
class DriverConfig:
    """Configuration for the deployment driver.

    working_dir holds one subdirectory per deployment (generated config,
    plan artifacts and the tool's own state file). state_dir holds the
    driver's records of operations, deployments and drift results.
    """
    working_dir: Path = field(default_factory=lambda: Path('terraform-workspace'))
    state_dir: Optional[Path] = None
    tool_path: str = 'tofu'
    templates_dir: Optional[Path] = None
    template_server: str = ''
    default_region: str = 'us-east-1'

    # Opaque execution environment for the tool (region, role, ...)
    tool_env: dict = field(default_factory=dict)

    server: ServerSettings = field(default_factory=ServerSettings)
    client: ClientSettings = field(default_factory=ClientSettings)

    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.working_dir, str):
            self.working_dir = Path(self.working_dir)
        if isinstance(self.templates_dir, str):
            self.templates_dir = Path(self.templates_dir)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if self.state_dir is None:
            self.state_dir = self.working_dir.parent / '.states'

    def deployment_dir(self, name: str) -> Path:
        """Working directory slot for a deployment."""
        validate_deployment_name(name)
        return self.working_dir / name


def validate_deployment_name(name: str) -> str:
    """Ensure a deployment name is safe to use as a directory name.

    Raises:
        ValueError: If the name is empty or contains unsupported characters
    """
    if not name or not DEPLOYMENT_NAME_RE.match(name):
        raise ValueError(
            f"Invalid deployment name '{name}': "
            "use lowercase letters, digits, '-' and '_'"
        )
    return name


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def discover_config_file() -> Optional[Path]:
    """Discover the config file.

    Resolution order:
    1. $DEPLOY_DRIVER_CONFIG environment variable
    2. ./deploy-driver.yaml
    """
    if env_path := os.environ.get('DEPLOY_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"DEPLOY_DRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.exists():
        return local
    return None


def _section(data: dict, key: str) -> dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _number(value, key: str, kind=float):
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from e


def load_config(path: Optional[Path] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        path: Optional config file; discovered when omitted

    Raises:
        ConfigError: If the file is missing, malformed, or has bad values
    """
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
    else:
        path = discover_config_file()

    data = _parse_yaml(path) if path else {}
    config = DriverConfig(config_file=path)

    if working_dir := data.get('working_dir'):
        config.working_dir = Path(working_dir)
        config.state_dir = config.working_dir.parent / '.states'
    if state_dir := data.get('state_dir'):
        config.state_dir = Path(state_dir)
    if tool_path := data.get('tool_path'):
        config.tool_path = str(tool_path)
    if templates_dir := data.get('templates_dir'):
        config.templates_dir = Path(templates_dir)
    if template_server := data.get('template_server'):
        config.template_server = str(template_server)
    if default_region := data.get('default_region'):
        config.default_region = str(default_region)

    tool_env = _section(data, 'tool_env')
    config.tool_env = {str(k): str(v) for k, v in tool_env.items()}

    server = _section(data, 'server')
    if 'bind' in server:
        config.server.bind = str(server['bind'])
    if 'port' in server:
        config.server.port = _number(server['port'], 'server.port', int)
    if 'path' in server:
        config.server.path = str(server['path'])
    if 'heartbeat_interval' in server:
        config.server.heartbeat_interval = _number(server['heartbeat_interval'], 'server.heartbeat_interval')
    if 'heartbeat_timeout' in server:
        config.server.heartbeat_timeout = _number(server['heartbeat_timeout'], 'server.heartbeat_timeout')
    if 'session_queue_size' in server:
        config.server.session_queue_size = _number(server['session_queue_size'], 'server.session_queue_size', int)

    client = _section(data, 'client')
    if 'max_attempts' in client:
        config.client.max_attempts = _number(client['max_attempts'], 'client.max_attempts', int)
    if 'base_delay' in client:
        config.client.base_delay = _number(client['base_delay'], 'client.base_delay')

    # Relative paths in a config file are relative to that file
    if path:
        base = path.parent
        if not config.working_dir.is_absolute():
            config.working_dir = base / config.working_dir
        if not config.state_dir.is_absolute():
            config.state_dir = base / config.state_dir
        if config.templates_dir and not config.templates_dir.is_absolute():
            config.templates_dir = base / config.templates_dir

    _apply_env_overrides(config, state_dir_set=bool(data.get('state_dir')))

    if config.server.heartbeat_timeout <= config.server.heartbeat_interval:
        raise ConfigError("server.heartbeat_timeout must be greater than server.heartbeat_interval")
    if config.client.max_attempts < 0:
        raise ConfigError("client.max_attempts must not be negative")

    return config


def _apply_env_overrides(config: DriverConfig, state_dir_set: bool = False) -> None:
    """Environment variables take precedence over the file.

    state_dir follows an overridden working_dir unless the file set it.
    """
    if env_path := os.environ.get('TERRAFORM_WORKING_DIR'):
        config.working_dir = Path(env_path)
        if not state_dir_set:
            config.state_dir = config.working_dir.parent / '.states'
    if tool_path := os.environ.get('TERRAFORM_PATH'):
        config.tool_path = tool_path
    if templates := os.environ.get('DEPLOY_DRIVER_TEMPLATES'):
        config.templates_dir = Path(templates)
    if server := os.environ.get('DEPLOY_DRIVER_TEMPLATE_SERVER'):
        config.template_server = server
    if port := os.environ.get('DEPLOY_DRIVER_PORT'):
        config.server.port = _number(port, 'DEPLOY_DRIVER_PORT', int)
