"""
Configuration for the Envoy exporter

Settings are read from, lowest to highest precedence:

    1. built-in defaults
    2. YAML config file (/etc/envoy/envoy.yaml, or the path in ENVOY_CONFIG)
    3. environment variables, including a .env file in the working directory

Environment Variables:

    ENVOY_ADDRESS       - Gateway URL (default: "https://envoy.local")
    ENVOY_LISTEN        - Metrics listen address (default: "0.0.0.0:8899")
    ENVOY_USERNAME      - Enlighten account email (default: none)
    ENVOY_PASSWORD      - Enlighten account password (default: none)
    ENVOY_JWT           - Pre-issued gateway token (default: none)
    ENVOY_SERIAL        - Gateway serial number, discovered when empty (default: none)
    ENVOY_DEBUG         - Enable debug logging "yes"/"no" (default: "no")
    ENVOY_REFRESH       - Poll interval in seconds (default: 20)
    ENVOY_TIMEOUT       - HTTP timeout for gateway requests in seconds (default: 10)
    ENVOY_METRICS_PATH  - Path serving the metrics (default: "/metrics")
    ENVOY_CONFIG        - Path of the YAML config file (default: "/etc/envoy/envoy.yaml")

The YAML file uses the same keys without the prefix, in lower case:

    address: https://192.168.1.40
    username: me@example.com
    password: secret
    refresh: 30
"""
import logging
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from pyenvoy.client import DEFAULT_ADDRESS
from pyenvoy.exceptions import InvalidConfigurationParameter

ENV_PREFIX = "ENVOY_"
DEFAULT_CONFIG_FILE = "/etc/envoy/envoy.yaml"
SECRETS = ('password', 'jwt')

log = logging.getLogger(__name__)


@dataclass
class Config:
    address: str = DEFAULT_ADDRESS
    listen: str = "0.0.0.0:8899"
    username: str = ""
    password: str = ""
    jwt: str = ""
    serial: str = ""
    debug: bool = False
    refresh: int = 20
    timeout: int = 10
    metrics_path: str = "/metrics"

    @property
    def listen_address(self) -> Tuple[str, int]:
        return parse_listen(self.listen)

    def masked(self) -> Dict[str, Any]:
        """Settings with secrets hidden, for logging"""
        settings = asdict(self)
        for key in SECRETS:
            if settings[key]:
                settings[key] = '*' * len(settings[key])
        return settings


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidConfigurationParameter(f"{key} must be a whole number, got '{value}'")


def parse_listen(listen: str) -> Tuple[str, int]:
    """Split host:port, an empty host binds every interface"""
    host, sep, port = str(listen).rpartition(':')
    if not sep:
        raise InvalidConfigurationParameter(f"listen must be host:port, got '{listen}'")
    port = parse_int('listen', port)
    if not 1 <= port <= 65535:
        raise InvalidConfigurationParameter(f"listen port must be between 1 and 65535, got {port}")
    return host.strip('[]'), port


def read_config_file(path: str) -> Dict[str, Any]:
    """Load the YAML config file, an empty dict when it does not exist"""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        log.info("Config file not found [%s]" % path)
        return {}
    except OSError as exc:
        raise InvalidConfigurationParameter(f"Unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise InvalidConfigurationParameter(f"Unable to parse config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidConfigurationParameter(f"Config file {path} must contain a mapping")
    return {str(k).lower(): v for k, v in data.items()}


def load_config(environ: Optional[Mapping[str, str]] = None, config_file: Optional[str] = None,
                dotenv: bool = True) -> Config:
    """Build the exporter configuration from file and environment"""
    if environ is None:
        if dotenv:
            load_dotenv()
        environ = os.environ
    if config_file is None:
        config_file = environ.get(ENV_PREFIX + "CONFIG", DEFAULT_CONFIG_FILE)

    settings: Dict[str, Any] = asdict(Config())
    file_settings = read_config_file(config_file) if config_file else {}
    for key, value in file_settings.items():
        if key in settings and value is not None:
            settings[key] = value
        else:
            log.debug("Ignoring unknown config file key [%s]" % key)
    for key in settings:
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            settings[key] = value

    config = Config(
        address=str(settings['address']),
        listen=str(settings['listen']),
        username=str(settings['username'] or ""),
        password=str(settings['password'] or ""),
        jwt=str(settings['jwt'] or ""),
        serial=str(settings['serial'] or ""),
        debug=parse_bool(settings['debug']),
        refresh=parse_int('refresh', settings['refresh']),
        timeout=parse_int('timeout', settings['timeout']),
        metrics_path=str(settings['metrics_path']),
    )
    _validate(config)
    return config


def _validate(config: Config):
    if config.refresh <= 0:
        raise InvalidConfigurationParameter(f"refresh must be > 0, got {config.refresh}")
    if config.timeout <= 0:
        raise InvalidConfigurationParameter(f"timeout must be > 0, got {config.timeout}")
    if not config.metrics_path.startswith('/'):
        raise InvalidConfigurationParameter(f"metrics_path must start with '/', got '{config.metrics_path}'")
    parse_listen(config.listen)
