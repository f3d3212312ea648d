"""Riceify settings loaded from YAML.

Example riceify.yaml:

```yaml
home: ~/.riceify
workers: 4
cache_max_entries: 10000

profiles:
  dark-theme:
    files:
      - ~/.config/kitty/*.conf
      - ~/.config/waybar/style.css
      - ~/.config/waybar/style.css.tmpl
    dependencies:
      - source: ~/.config/waybar/style.css.tmpl
        target: ~/.config/waybar/style.css
```

Environment variables:
- RICEIFY_CONFIG: Path to the settings file
- RICEIFY_HOME: Override the data directory
- RICEIFY_WORKERS: Override the worker pool size

Settings are frozen: the engine reads them once per transaction.
"""
import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from ..engine.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".riceify"


class DependencyDeclaration(BaseModel):
    """source must be materialized before target (e.g. template -> generated)."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str = Field(..., alias="from")
    target: str = Field(..., alias="to")


class ProfileDefinition(BaseModel):
    """Which files belong to a profile and how they are ordered."""
    model_config = ConfigDict(frozen=True)

    files: list[str] = Field(
        default_factory=list,
        description="Paths or glob patterns ('~' is expanded)",
    )
    dependencies: list[DependencyDeclaration] = Field(default_factory=list)

    @field_validator("files", mode="before")
    @classmethod
    def single_pattern(cls, v):
        """Accept a bare string for a single pattern."""
        if isinstance(v, str):
            return [v]
        return v


class RiceifySettings(BaseModel):
    """Immutable input consumed by the switch engine."""
    model_config = ConfigDict(frozen=True)

    home: Path = Field(default=DEFAULT_HOME)
    store_dir: Optional[Path] = None
    cache_file: Optional[Path] = None
    cache_max_entries: int = Field(default=10_000, ge=1)
    workers: Optional[int] = Field(default=None, ge=1)
    content_cache_bytes: int = Field(default=32 * 1024 * 1024, ge=0)
    profiles: dict[str, ProfileDefinition] = Field(default_factory=dict)

    @field_validator("home", "store_dir", "cache_file", mode="before")
    @classmethod
    def expand_user(cls, v):
        if v is None:
            return v
        return Path(os.path.expanduser(str(v)))

    @property
    def resolved_store_dir(self) -> Path:
        return self.store_dir or self.home / "store"

    @property
    def resolved_cache_file(self) -> Path:
        return self.cache_file or self.home / "cache" / "hashes.json"

    def get_profile(self, name: str) -> ProfileDefinition:
        """
        Get a profile definition.

        Raises:
            ValidationError: If the profile is not declared
        """
        if name not in self.profiles:
            raise ValidationError(
                f"Unknown profile: {name}. Declared: {', '.join(sorted(self.profiles)) or 'none'}"
            )
        return self.profiles[name]

    @classmethod
    def from_dict(cls, data: dict) -> "RiceifySettings":
        """Build settings from a dict, applying environment overrides."""
        data = dict(data or {})

        home_env = os.environ.get("RICEIFY_HOME")
        if home_env:
            data["home"] = home_env

        workers_env = os.environ.get("RICEIFY_WORKERS")
        if workers_env:
            try:
                data["workers"] = int(workers_env)
            except ValueError:
                logger.warning(f"Ignoring non-integer RICEIFY_WORKERS={workers_env!r}")

        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError(f"Invalid settings: {'; '.join(errors)}", errors) from e


def find_settings_file() -> Optional[Path]:
    """Find riceify.yaml in the usual places."""
    env_path = os.environ.get("RICEIFY_CONFIG")
    if env_path:
        return Path(env_path).expanduser()

    search_paths = [
        Path.cwd() / "riceify.yaml",
        Path.home() / ".config" / "riceify" / "riceify.yaml",
        DEFAULT_HOME / "riceify.yaml",
    ]

    for path in search_paths:
        if path.exists():
            return path
    return None


def load_settings(path: Optional[Path] = None) -> RiceifySettings:
    """
    Load settings from a YAML file.

    Args:
        path: Settings file (default: searched, see find_settings_file)

    Returns:
        RiceifySettings (defaults only if no file is found)

    Raises:
        ValidationError: If the file is unreadable or invalid
    """
    path = Path(path) if path else find_settings_file()
    if path is None:
        logger.info("No riceify.yaml found, using defaults")
        return RiceifySettings.from_dict({})

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot load settings from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(f"Settings file {path} must contain a mapping")

    logger.debug(f"Loaded settings from {path}")
    return RiceifySettings.from_dict(data)
