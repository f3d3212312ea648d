"""Settings consumed by the switch engine."""
from .settings import (
    RiceifySettings,
    ProfileDefinition,
    DependencyDeclaration,
    load_settings,
    find_settings_file,
)

__all__ = [
    "RiceifySettings",
    "ProfileDefinition",
    "DependencyDeclaration",
    "load_settings",
    "find_settings_file",
]
