"""Configuration management for Deckhand."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "deckhand.yaml"

# Leading priming messages are at most a user/assistant pair.
MAX_PRIMING_MESSAGES = 2


class ModelConfig(BaseModel):
    """Model endpoint configuration."""

    provider: str = "zai"
    model: str = "glm-4.6"
    temperature: float = 0.7
    max_tokens: int = 8192
    api_key: str = ""
    base_url: str = ""
    request_timeout: float = 120.0
    priming: Literal["exchange", "system"] = "exchange"


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_tool_rounds: int = 400
    content_chunk_delay: float = 0.01
    thinking_chunk_delay: float = 0.005


class ContextConfig(BaseModel):
    """Conversation compaction configuration."""

    max_messages: int = 50
    keep_recent: int = 20

    @model_validator(mode="after")
    def _check_window(self) -> "ContextConfig":
        """Compaction must always land strictly below the ceiling."""
        if self.keep_recent < 1:
            raise ValueError("context.keep_recent must be at least 1")
        if MAX_PRIMING_MESSAGES + 1 + self.keep_recent >= self.max_messages:
            raise ValueError(
                "context.max_messages must exceed priming + summary + keep_recent "
                f"({MAX_PRIMING_MESSAGES + 1 + self.keep_recent})"
            )
        return self


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 30
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]
    max_output_chars: int = 10000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    view_max_lines: int = 10
    search_max_results: int = 50
    batch_max_concurrency: int = 5


class SubAgentConfig(BaseModel):
    """Delegated sub-agent configuration."""

    max_parallel_tasks: int = 3
    quick_rounds: int = 10
    medium_rounds: int = 25
    thorough_rounds: int = 50
    summary_threshold: int = 1500
    summary_head_chars: int = 1000
    summary_tail_chars: int = 500


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    subagents: SubAgentConfig = Field(default_factory=SubAgentConfig)
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
        # DECKHAND_* variables override values read from YAML
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
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def thoroughness_rounds(self, thoroughness: str) -> int:
        """Round ceiling for a sub-agent thoroughness tier."""
        tiers = {
            "quick": self.subagents.quick_rounds,
            "medium": self.subagents.medium_rounds,
            "thorough": self.subagents.thorough_rounds,
        }
        return tiers.get(thoroughness, self.subagents.medium_rounds)


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
