"""Configuration management for Deckhand."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from deckhand.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
DEFAULT_CHECKPOINT_PATH = Path("~/.deckhand/checkpoints").expanduser()
LOCAL_CONFIG_FILENAME = "deckhand.yaml"

ApprovalModeName = Literal["auto", "ask", "deny"]


class ModelConfig(BaseModel):
    """Reasoner model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""


class LoopConfig(BaseModel):
    """Step loop limits."""

    hard_step_ceiling: int = 100
    max_steps: int | None = None
    max_subagent_depth: int = 3


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_tokens: int = 170000
    summarization_threshold: float = 0.8
    keep_recent_messages: int = 6
    eviction_token_limit: int = 20000
    hard_ceiling_ratio: float = 1.5
    max_summarization_failures: int = 3


class ApprovalConfig(BaseModel):
    """Tool approval policy configuration."""

    default: ApprovalModeName = "auto"
    tools: dict[str, ApprovalModeName] = Field(default_factory=dict)


class CheckpointConfig(BaseModel):
    """Checkpoint storage configuration."""

    storage: Literal["memory", "file", "sqlite"] = "file"
    path: str = str(DEFAULT_CHECKPOINT_PATH)
    namespace: str = "default"


class BackendConfig(BaseModel):
    """Content backend configuration."""

    storage: Literal["state", "filesystem"] = "state"
    root: str = "./workspace"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; environment variables win over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: the file is not valid YAML or fails validation
        """
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationError(f"Invalid config file {config_path}: {e}")

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_backend_root(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve filesystem backend root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.backend.root).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
