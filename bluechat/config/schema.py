"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

from bluechat.chat.conversation import DEFAULT_NAMESPACE
from bluechat.chat.responder import DEFAULT_REPLIES
from bluechat.chat.session import DEFAULT_WELCOME_DELAY, DEFAULT_WELCOME_TEXT


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionConfig(Base):
    """Connection handshake simulation."""

    welcome_delay: float = Field(default=DEFAULT_WELCOME_DELAY, ge=0)  # Seconds before the peer's welcome arrives
    welcome_text: str = DEFAULT_WELCOME_TEXT
    deliver_after_disconnect: bool = True  # Deliver a pending welcome even if the peer disconnected

    @field_validator("welcome_text")
    @classmethod
    def _welcome_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("welcome_text must not be empty")
        return v


class ResponderConfig(Base):
    """Simulated peer replies."""

    min_delay: float = 1.0  # Seconds; reply delay drawn uniformly from [min_delay, max_delay]
    max_delay: float = 3.0
    replies: list[str] = Field(default_factory=lambda: list(DEFAULT_REPLIES))
    seed: int | None = None  # Fixed seed for reproducible replies
    deliver_after_disconnect: bool = True  # Deliver pending replies even if the peer disconnected

    @model_validator(mode="after")
    def _check_ranges(self) -> "ResponderConfig":
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValueError("require 0 <= min_delay <= max_delay")
        if not [r for r in self.replies if r.strip()]:
            raise ValueError("replies must contain at least one non-empty entry")
        return self


class DiscoveryConfig(Base):
    """Device discovery."""

    scan_duration: float = 2.0  # Seconds per scan window
    refresh_on_rediscovery: bool = False  # Update signal/name of already-known devices on re-scan
    simulated_devices: bool = True  # Use the demo adapter instead of a BLE radio


class StorageConfig(Base):
    """Message history snapshot."""

    data_dir: str = "~/.bluechat"
    namespace: str = DEFAULT_NAMESPACE  # Snapshot file is <data_dir>/<namespace>.json
    autosave: bool = True  # Write the snapshot after every append

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()


class SmartReplyConfig(Base):
    """Reply-suggestion utility (LLM backed)."""

    model: str = "gpt-4o"
    api_key: str = ""
    api_base: str | None = None
    max_suggestions: int = Field(default=3, ge=1)
    max_tokens: int = 256
    temperature: float = 0.7


class ApiConfig(Base):
    """JSON HTTP API."""

    host: str = "127.0.0.1"
    port: int = 8765  # 0 = any free port


class ChatConfig(BaseSettings):
    """Root configuration for bluechat."""

    session: SessionConfig = Field(default_factory=SessionConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    smart_reply: SmartReplyConfig = Field(default_factory=SmartReplyConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = ConfigDict(env_prefix="BLUECHAT_", env_nested_delimiter="__")
