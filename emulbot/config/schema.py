"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IRCConfig(Base):
    """IRC connection configuration."""

    server: str = "irc.libera.chat"
    port: int = 6697
    nickname: str = "Emul"
    nickserv_password: str | None = None
    use_tls: bool = True
    line_limit: int = 430  # Max bytes of text per PRIVMSG
    send_delay: float = 0.6  # Seconds between consecutive lines
    reconnect_initial: float = 5.0
    reconnect_max: float = 300.0


class AdminConfig(Base):
    """Bootstrap admin, added only when the admin table is empty."""

    initial: str = "Baughn"


class AgentConfig(Base):
    """Reasoning-service and orchestration settings."""

    model: str = "gemini/gemini-2.5-pro"
    api_key: str | None = None
    api_base: str | None = None
    prompt_path: str = "~/.emulbot/prompt.txt"
    temperature: float = 0.7
    max_tokens: int = 2048
    max_rounds: int = 3  # Hard ceiling R on reasoning round-trips
    history_turns: int = 100  # Buffer messages included per request
    buffer_capacity: int = 500  # Per-channel ring size N
    api_timeout: float = 60.0
    transport_retries: int = 2

    @field_validator("max_rounds", "buffer_capacity", "history_turns")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("transport_retries")
    @classmethod
    def _bounded_retries(cls, value: int) -> int:
        if not 0 <= value <= 2:
            raise ValueError("must be between 0 and 2")
        return value


class InterjectionConfig(Base):
    """Tuning for unprompted replies. Shape and constants are not a contract."""

    chance_per_message: float = Field(default=0.02, gt=0.0, le=1.0)
    curve: Literal["linear", "exponential"] = "linear"
    steepness: float = 1.0  # k in 1 - exp(-k*p) for the exponential curve
    residual_messages: float = 1.0  # Pressure carried over after a firing, in per-message increments
    min_gap_seconds: float = 30.0
    min_gap_messages: int | None = None  # Defaults to half the average gap
    max_gap_messages: int | None = None  # Defaults to twice the average gap
    mention_chance: float = Field(default=0.2, gt=0.0, le=1.0)
    mention_classifier: bool = True  # Ask the model when a mention is ambiguous


class ToolsConfig(Base):
    """Tool catalog limits."""

    timeout: float = 30.0
    max_dice: int = 100
    max_sides: int = 1000
    max_modifier: int = 10000
    max_image_bytes: int = 4 * 1024 * 1024
    image_fetch_timeout: float = 15.0
    max_image_dimension: int = 1024
    image_cache_size: int = 20
    torrent_watch_dir: str = "~/.emulbot/torrents"


class StorageConfig(Base):
    """Durable store location."""

    db_path: str = "~/.emulbot/emulbot.sqlite"


class Config(BaseSettings):
    """Root configuration for emulbot."""

    irc: IRCConfig = Field(default_factory=IRCConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    interjection: InterjectionConfig = Field(default_factory=InterjectionConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = SettingsConfigDict(
        env_prefix="EMULBOT_",
        env_nested_delimiter="__",
    )

    @property
    def db_path(self) -> Path:
        return Path(self.storage.db_path).expanduser()

    @property
    def prompt_path(self) -> Path:
        return Path(self.agent.prompt_path).expanduser()

    @property
    def torrent_watch_dir(self) -> Path:
        return Path(self.tools.torrent_watch_dir).expanduser()
