"""
Configuration manager for the Webtoon Adapter.
Provides validation, caching, and type-safe configuration handling.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union, List
from dataclasses import dataclass, field, asdict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)

GEMINI_PROVIDER = "gemini"
OPENAI_COMPATIBLE_PROVIDER = "openai-compatible"


@dataclass
class GeminiEndpoint:
    """Google Gemini endpoint, streamed through the native SDK"""
    model_name: str = "gemini-2.5-pro"
    api_key: str = ""
    base_url: Optional[str] = None
    provider: str = GEMINI_PROVIDER

    def __post_init__(self):
        if self.provider != GEMINI_PROVIDER:
            raise ValueError(f"GeminiEndpoint requires provider '{GEMINI_PROVIDER}', got {self.provider}")
        if not self.model_name:
            raise ValueError("model_name is required")


@dataclass
class OpenAICompatibleEndpoint:
    """Any chat-completions API speaking the OpenAI SSE dialect"""
    model_name: str = "gpt-4o"
    api_key: str = ""
    base_url: Optional[str] = None
    provider: str = OPENAI_COMPATIBLE_PROVIDER

    def __post_init__(self):
        if self.provider != OPENAI_COMPATIBLE_PROVIDER:
            raise ValueError(
                f"OpenAICompatibleEndpoint requires provider '{OPENAI_COMPATIBLE_PROVIDER}', got {self.provider}"
            )
        if not self.model_name:
            raise ValueError("model_name is required")


ModelEndpoint = Union[GeminiEndpoint, OpenAICompatibleEndpoint]

_DEFAULT_KEY_ENV = {
    GEMINI_PROVIDER: "GEMINI_API_KEY",
    OPENAI_COMPATIBLE_PROVIDER: "OPENAI_API_KEY",
}


def build_endpoint(entry: Dict[str, Any]) -> ModelEndpoint:
    """Build a tagged endpoint from its dictionary form.

    A missing ``api_key`` is looked up in the environment variable named by
    ``api_key_env`` (or the provider's default variable).
    """
    provider = entry.get("provider", GEMINI_PROVIDER)
    if provider not in _DEFAULT_KEY_ENV:
        raise ValueError(f"Unknown model provider: {provider}")

    api_key = entry.get("api_key") or os.getenv(entry.get("api_key_env") or _DEFAULT_KEY_ENV[provider], "")
    kwargs = {
        "model_name": entry.get("model_name", ""),
        "api_key": api_key,
        "base_url": entry.get("base_url") or None,
    }
    if provider == GEMINI_PROVIDER:
        return GeminiEndpoint(**kwargs)
    return OpenAICompatibleEndpoint(**kwargs)


@dataclass
class ApiConfig:
    """Transport configuration with validation"""
    timeout: int = 300
    temperature: float = 0.7
    max_output_tokens: int = 8192

    def __post_init__(self):
        """Validate configuration values"""
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"Temperature must be between 0.0 and 2.0, got {self.temperature}")
        if self.max_output_tokens < 1:
            raise ValueError(f"max_output_tokens must be positive, got {self.max_output_tokens}")
        if self.timeout < 1:
            raise ValueError(f"timeout must be positive, got {self.timeout}")


@dataclass
class RetryConfig:
    """Backoff policy of the resilient invocation layer"""
    rate_limit_wait_seconds: int = 60
    max_api_retries: int = 3
    server_backoff_seconds: float = 5.0
    unknown_backoff_seconds: float = 2.0

    def __post_init__(self):
        if self.rate_limit_wait_seconds < 0:
            raise ValueError(f"rate_limit_wait_seconds cannot be negative, got {self.rate_limit_wait_seconds}")
        if self.max_api_retries < 0:
            raise ValueError(f"max_api_retries cannot be negative, got {self.max_api_retries}")
        if self.server_backoff_seconds < 0 or self.unknown_backoff_seconds < 0:
            raise ValueError("backoff seconds cannot be negative")


@dataclass
class ProjectDefaults:
    """Defaults applied to newly created projects"""
    batch_size: int = 6
    max_retries: int = 3
    novel_type: str = "玄幻"

    def __post_init__(self):
        if not 1 <= self.batch_size <= 20:
            raise ValueError(f"batch_size must be between 1 and 20, got {self.batch_size}")
        if not 1 <= self.max_retries <= 10:
            raise ValueError(f"max_retries must be between 1 and 10, got {self.max_retries}")


@dataclass
class StorageConfig:
    projects_dir: str = "projects"


@dataclass
class UIConfig:
    """UI configuration"""
    show_progress: bool = True
    stream_output: bool = False
    verbose_logging: bool = False


@dataclass
class AppConfig:
    """Complete application configuration"""
    api: ApiConfig = field(default_factory=ApiConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    project: ProjectDefaults = field(default_factory=ProjectDefaults)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    models: Dict[str, Dict[str, Any]] = field(default_factory=lambda: {
        "gemini-pro": {"provider": GEMINI_PROVIDER, "model_name": "gemini-2.5-pro"}
    })
    breakdown_model: str = "gemini-pro"
    script_model: str = "gemini-pro"

    def __post_init__(self):
        for stage, name in (("breakdown_model", self.breakdown_model), ("script_model", self.script_model)):
            if name not in self.models:
                raise ValueError(f"{stage} '{name}' is not defined in models")

    def get_endpoint(self, name: Optional[str] = None, stage: str = "breakdown") -> ModelEndpoint:
        """Resolve a named endpoint, defaulting to the one configured for ``stage``"""
        if name is None:
            name = self.script_model if stage == "script" else self.breakdown_model
        if name not in self.models:
            raise KeyError(f"Unknown model: {name}")
        return build_endpoint(self.models[name])


class ConfigManager:
    """Configuration manager with caching and validation"""

    _instance: Optional['ConfigManager'] = None
    _config_cache: Dict[str, AppConfig] = {}

    def __new__(cls) -> 'ConfigManager':
        """Singleton pattern for global configuration access"""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize the configuration manager"""
        if hasattr(self, '_initialized'):
            return
        self._initialized = True
        self._config_path: Optional[Path] = None
        self._config: Optional[AppConfig] = None

    @lru_cache(maxsize=32)
    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration as dictionary with caching"""
        return asdict(AppConfig())

    def load_config(self, config_path: Union[str, Path] = "config.json") -> AppConfig:
        """Load configuration from file with validation and caching"""
        config_path = Path(config_path)

        # Check cache first
        cache_key = str(config_path.absolute())
        if cache_key in self._config_cache:
            if config_path.exists():
                cached_time = getattr(self._config_cache[cache_key], '_load_time', 0)
                if config_path.stat().st_mtime <= cached_time:
                    return self._config_cache[cache_key]
            else:
                return self._config_cache[cache_key]

        config_dict = json.loads(json.dumps(self._get_default_config()))

        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    user_config = json.load(f)

                config_dict = self._deep_merge_config(config_dict, user_config)
                logger.info(f"Loaded configuration from {config_path}")

            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON in {config_path}: {e}. Using defaults.")
            except IOError as e:
                logger.warning(f"Error reading {config_path}: {e}. Using defaults.")
        else:
            logger.info(f"Config file {config_path} not found, using defaults.")

        try:
            config = self._build_config(config_dict)
            config._load_time = config_path.stat().st_mtime if config_path.exists() else 0

            self._config_cache[cache_key] = config
            self._config_path = config_path
            self._config = config
            return config

        except (ValueError, TypeError) as e:
            logger.error(f"Configuration validation error: {e}")
            # Fall back to default configuration
            config = AppConfig()
            config._load_time = 0
            return config

    def _build_config(self, config_dict: Dict[str, Any]) -> AppConfig:
        return AppConfig(
            api=ApiConfig(**config_dict["api"]),
            retry=RetryConfig(**config_dict["retry"]),
            project=ProjectDefaults(**config_dict["project"]),
            storage=StorageConfig(**config_dict["storage"]),
            ui=UIConfig(**config_dict["ui"]),
            models=config_dict["models"],
            breakdown_model=config_dict["breakdown_model"],
            script_model=config_dict["script_model"],
        )

    def _deep_merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge user configuration with defaults"""
        result = default.copy()

        for key, value in user.items():
            # Named model tables replace rather than merge
            if key == "models":
                result[key] = value
            elif key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def save_config(self, config: Optional[AppConfig] = None,
                    config_path: Optional[Union[str, Path]] = None) -> bool:
        """Save configuration to file with backup"""
        if config is None:
            config = self._config
        if config is None:
            logger.error("No configuration to save")
            return False

        if config_path is None:
            config_path = self._config_path or Path("config.json")
        config_path = Path(config_path)

        if config_path.exists():
            backup_path = config_path.with_suffix(f"{config_path.suffix}.backup")
            try:
                backup_path.write_bytes(config_path.read_bytes())
            except IOError as e:
                logger.warning(f"Failed to create backup: {e}")

        config_dict = asdict(config)
        # Secrets stay in the environment
        for model in config_dict["models"].values():
            model.pop("api_key", None)

        try:
            temp_path = config_path.with_suffix(".tmp")
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)
            temp_path.replace(config_path)

            logger.info(f"Configuration saved to {config_path}")
            return True

        except IOError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

    def get_config(self) -> AppConfig:
        """Get current configuration, loading if necessary"""
        if self._config is None:
            return self.load_config()
        return self._config

    def validate_config(self, config_dict: Dict[str, Any]) -> List[str]:
        """Validate configuration dictionary and return list of errors"""
        errors = []

        sections = (
            ("API", "api", ApiConfig),
            ("Retry", "retry", RetryConfig),
            ("Project", "project", ProjectDefaults),
            ("Storage", "storage", StorageConfig),
            ("UI", "ui", UIConfig),
        )
        for label, key, section_cls in sections:
            try:
                section_cls(**config_dict.get(key, {}))
            except (ValueError, TypeError) as e:
                errors.append(f"{label} config error: {e}")

        for name, entry in config_dict.get("models", {}).items():
            try:
                build_endpoint(entry)
            except (ValueError, TypeError) as e:
                errors.append(f"Model '{name}' config error: {e}")

        models = config_dict.get("models", self._get_default_config()["models"])
        for stage in ("breakdown_model", "script_model"):
            name = config_dict.get(stage)
            if name is not None and name not in models:
                errors.append(f"{stage} '{name}' is not defined in models")

        return errors

    def clear_cache(self) -> None:
        """Clear configuration cache"""
        self._config_cache.clear()
        self._get_default_config.cache_clear()


# Global configuration manager instance
config_manager = ConfigManager()


def get_config(config_path: Union[str, Path] = "config.json") -> AppConfig:
    """Convenience function to get configuration"""
    return config_manager.load_config(config_path)


def save_config(config: AppConfig, config_path: Union[str, Path] = "config.json") -> bool:
    """Convenience function to save configuration"""
    return config_manager.save_config(config, config_path)
