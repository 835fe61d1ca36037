"""
Configuration management and loading.

Handles client settings, environment overrides, and logging setup.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-7-sonnet-20250219"
DEFAULT_BASE_URL = "https://api.anthropic.com/v1/"

API_KEY_ENV_VARS = ("CLAUCHAT_API_KEY", "ANTHROPIC_API_KEY")
MODEL_ENV_VAR = "CLAUCHAT_MODEL"


@dataclass(frozen=True)
class ClientConfig:
    """Settings injected into the engine and transport at construction."""
    api_key: str = field(default="", repr=False)
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    max_tokens: int = 4096
    request_timeout: float = 120.0
    connect_timeout: float = 10.0
    first_byte_timeout: float = 30.0
    verbose: bool = False

    def __post_init__(self):
        """Validate config values."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if not self.base_url or not self.base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        for name in ("request_timeout", "connect_timeout", "first_byte_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def replace(self, **changes) -> "ClientConfig":
        return dataclasses.replace(self, **changes)


_FIELD_TYPES = {
    "api_key": (str,),
    "model": (str,),
    "base_url": (str,),
    "max_tokens": (int,),
    "request_timeout": (int, float),
    "connect_timeout": (int, float),
    "first_byte_timeout": (int, float),
    "verbose": (bool,),
}


def default_config_path() -> Path:
    """Per-user config file location."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(Path.home(), ".config")
    return Path(config_home) / "clauchat" / "config.yaml"


def load_client_config(path: str) -> ClientConfig:
    """Load and validate client configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ClientConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_FIELD_TYPES)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values = {}
    for key, value in raw_config.items():
        if value is None:
            continue
        allowed = _FIELD_TYPES[key]
        # bool is an int subclass; only accept it where bool is expected
        if not isinstance(value, allowed) or (isinstance(value, bool) and bool not in allowed):
            raise ValueError(f"'{key}' has invalid type {type(value).__name__}")
        values[key] = value

    config = ClientConfig(**values)
    logger.info(f"Configuration loaded from {config_path}")
    return config


def apply_env_overrides(config: ClientConfig, environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Fill the API key and model from the environment.

    An API key in the file wins over the environment; the model variable
    always wins when set.
    """
    env = os.environ if environ is None else environ
    changes: Dict[str, str] = {}

    if not config.has_credentials:
        for var in API_KEY_ENV_VARS:
            if env.get(var, "").strip():
                changes["api_key"] = env[var].strip()
                logger.debug(f"API key taken from {var}")
                break

    model = env.get(MODEL_ENV_VAR, "").strip()
    if model:
        changes["model"] = model

    return config.replace(**changes) if changes else config


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """Resolve the effective configuration.

    An explicit path must exist. The default path is optional; defaults are
    used when it is absent.
    """
    if path is not None:
        config = load_client_config(path)
    else:
        default_path = default_config_path()
        if default_path.exists():
            config = load_client_config(str(default_path))
        else:
            config = ClientConfig()
    return apply_env_overrides(config, environ)


def setup_logging(verbose: bool = False) -> None:
    """Configure Python logging based on verbose flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet noisy libraries
    for name in ("httpx", "httpcore", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
