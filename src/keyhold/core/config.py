"""
Configuration for keyhold

Settings come from ``<home>/config.yaml`` (or an explicit path) and are
then overridden by ``KEYHOLD_*`` environment variables, e.g.
``KEYHOLD_SIGNING_TIMEOUT=30`` or ``KEYHOLD_RELAYS=a,b``.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union
import logging
import os

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .vault import CURRENT_VERSION, DEFAULT_KDF_PARAMS

logger = logging.getLogger("keyhold.config")

DEFAULT_HOME = Path("~/.keyhold")
CONFIG_FILENAME = "config.yaml"
ENV_PREFIX = "KEYHOLD_"


class KeyholdConfig(BaseModel):
    """Runtime settings"""

    home: Path = Field(default=DEFAULT_HOME, description="Directory for keys, relays and config")
    storage_backend: Literal["keyring", "file"] = Field(default="keyring")
    keyring_service: str = Field(default="keyhold")
    user_id: str = Field(default="default", description="Keyring entry suffix")
    kdf_version: int = Field(default=CURRENT_VERSION, description="Vault version used for new blobs")
    signing_timeout: float = Field(default=15.0, gt=0, description="External signer approval timeout (s)")
    publish_endpoint_timeout: float = Field(default=10.0, gt=0)
    publish_overall_timeout: float = Field(default=30.0, gt=0)
    required_acks: int = Field(default=1, ge=1, description="Acknowledgements needed for success")
    publish_retries: int = Field(default=0, ge=0, description="Extra publish attempts while below required_acks")
    publish_backoff_factor: float = Field(default=2.0, ge=1)
    publish_retry_delay: float = Field(default=1.0, ge=0, description="Wait before the first retry (s)")
    unlock_ttl: Optional[float] = Field(default=None, gt=0, description="Seconds a decrypted key stays cached")
    relays: List[str] = Field(default_factory=list)
    log_level: str = Field(default="WARNING")

    @field_validator('home')
    @classmethod
    def expand_home(cls, v):
        return Path(v).expanduser()

    @field_validator('kdf_version')
    @classmethod
    def validate_kdf_version(cls, v):
        params = DEFAULT_KDF_PARAMS.get(v)
        if params is None:
            raise ValueError(f"Unknown KDF version: {v}")
        if params.hex_payload:
            raise ValueError(f"KDF version {v} is legacy and can only be decrypted")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator('relays', mode='before')
    @classmethod
    def split_relays(cls, v):
        if isinstance(v, str):
            return [r.strip() for r in v.split(',') if r.strip()]
        return v

    @property
    def keys_dir(self) -> Path:
        return self.home / "keys"

    @property
    def relays_dir(self) -> Path:
        return self.home / "relays"


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides = {}
    for name in KeyholdConfig.model_fields:
        value = environ.get(ENV_PREFIX + name.upper())
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def load_config(
    path: Optional[Union[str, Path]] = None,
    home: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> KeyholdConfig:
    """
    Load configuration from YAML and the environment

    A missing config file yields the defaults. Invalid YAML or values
    raise ConfigError.
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if home is None:
        home = environ.get(ENV_PREFIX + "HOME") or DEFAULT_HOME
    home = Path(home).expanduser()
    config_path = Path(path).expanduser() if path else home / CONFIG_FILENAME

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        data.update(raw)
        logger.debug("Loaded config from %s", config_path)
    elif path:
        raise ConfigError(f"Config file not found: {config_path}")

    data.setdefault('home', home)
    data.update(_env_overrides(environ))

    try:
        return KeyholdConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
