"""Runtime settings: defaults, optional JSON config file, IMGFETCH_* environment."""
import contextvars
import json
import logging
import platform
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import Field, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from imgfetch.core.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "IMGFETCH_"

DEFAULT_LIBRARY_URL = "https://library.sylabs.io"
DEFAULT_KEYSERVER_URL = "https://keys.sylabs.io"

# platform.machine() -> library architecture name
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i686": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}

# Contents of the --config file for the Settings build in progress
_file_values: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "imgfetch_config_file", default={}
)


def default_architecture() -> str:
    """Library architecture name of the running host."""
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


class JsonFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source serving the values of a JSON config file."""

    def __init__(self, settings_cls: Type[BaseSettings], values: Dict[str, Any]):
        super().__init__(settings_cls)
        self.values = values

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self.values.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return {k: v for k, v in self.values.items() if k in self.settings_cls.model_fields}


class Settings(BaseSettings):
    """imgfetch configuration.

    Precedence, lowest first: field defaults, the JSON config file,
    IMGFETCH_* environment variables, keyword arguments.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    library_url: str = Field(default=DEFAULT_LIBRARY_URL, description="Library API root")
    keyserver_url: str = Field(default=DEFAULT_KEYSERVER_URL, description="Key server root")
    cache_dir: Path = Field(
        default=Path("~/.imgfetch/cache"), validate_default=True, description="Root of the image cache"
    )
    disable_cache: bool = Field(default=False, description="Bypass the cache entirely")
    auth_token: Optional[str] = Field(default=None, description="Library bearer token")
    keyring_dir: Path = Field(
        default=Path("~/.imgfetch/keys"),
        validate_default=True,
        description="Directory of trusted <key_id>.pub files",
    )
    use_keyserver: bool = Field(default=True, description="Look up unknown keys remotely")
    timeout: float = Field(default=30.0, gt=0, description="Network timeout in seconds")
    tmp_dir: Optional[Path] = Field(default=None, description="Temporary directory")

    @field_validator("library_url", "keyserver_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v.rstrip("/")

    @field_validator("cache_dir", "keyring_dir", "tmp_dir")
    @classmethod
    def expand_path(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v is not None else None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            JsonFileSettingsSource(settings_cls, _file_values.get()),
        )

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Build settings from defaults, then the config file, then the environment.

        Raises:
            ConfigError: If the file is missing or invalid, or a value fails validation
        """
        data: Dict[str, Any] = {}

        if config_path is not None:
            config_path = Path(config_path)
            if not config_path.is_file():
                raise ConfigError(f"Config file not found: {config_path}")
            try:
                data = json.loads(config_path.read_text())
            except (OSError, ValueError) as e:
                raise ConfigError(f"Invalid config file {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config file {config_path} must hold a JSON object")

        token = _file_values.set(data)
        try:
            settings = cls()
        except (ValidationError, SettingsError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
        finally:
            _file_values.reset(token)
        logger.debug(f"Loaded settings: cache_dir={settings.cache_dir}, library={settings.library_url}")
        return settings
