"""
chat-memory config package public API.

Loads ``chat_memory.toml`` with ``CHAT_MEMORY_`` environment overrides and
exposes the typed storage view the memory store consumes.
"""

from chat_memory.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from chat_memory.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ChatMemoryConfig,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    StorageSettings,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "ChatMemoryConfig",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "StorageSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]
