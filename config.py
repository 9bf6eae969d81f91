"""
Configuration for the LLM proxy.

Settings are resolved once at startup into an immutable ``ProxyConfig`` and
handed to every component that needs them.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProxyConfig(BaseSettings):
    """Proxy configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority, passed as keyword arguments)
    2. Environment variables (LLM_PROXY_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="LLM_PROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Listener settings
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )
    port: int = Field(
        default=11434,
        description="Port to listen on",
    )

    # Backend settings
    backend_type: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Backend dialect: 'openai' (translating) or 'ollama' (pass-through)",
    )
    backend_url: str = Field(
        default="http://localhost:8080",
        description="Backend server URL",
    )
    backend_timeout: float = Field(
        default=300.0,
        description="Backend connect/read timeout in seconds, also the limit on draining a backend stream",
    )
    request_timeout: float = Field(
        default=0.0,
        description="Overall deadline for relaying one exchange in seconds (0 = none)",
    )
    force_prompt_cache: bool = Field(
        default=False,
        description="Always set cache_prompt on OpenAI backend requests",
    )
    tool_blacklist: list[str] = Field(
        default_factory=list,
        description="Tool names to remove from chat requests",
    )

    # Chat text injection
    injection_enabled: bool = Field(
        default=False,
        description="Append injection_text to a user message",
    )
    injection_text: str = Field(
        default="",
        description="Text to inject",
    )
    injection_mode: Literal["first", "last"] = Field(
        default="last",
        description="Which user message receives the injected text",
    )

    # Diagnostics
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )
    verbose: bool = Field(
        default=False,
        description="Log every request with status code and latency",
    )
    log_messages: bool = Field(
        default=False,
        description="Log message content to stdout",
    )
    log_raw_requests: bool = Field(
        default=False,
        description="Log decoded client requests to stdout",
    )
    log_raw_responses: bool = Field(
        default=False,
        description="Log every relayed increment to stdout",
    )
    cors_enabled: bool = Field(
        default=False,
        description="Enable CORS for all routes",
    )

    # Exchange log settings
    log_dir: str | None = Field(
        default=None,
        description="Directory for the exchange log (default: XDG state dir)",
    )
    log_ttl_hours: int = Field(
        default=168,
        description="Hours to retain exchange records (0 = forever)",
    )
    max_records: int = Field(
        default=100,
        description="Maximum exchange records to keep (0 = unlimited)",
    )
    cleanup_interval: int = Field(
        default=5,
        description="Minutes between exchange log pruning passes (0 = disabled)",
    )

    @field_validator("backend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def frontend_base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def load_config(**overrides: object) -> ProxyConfig:
    """Load configuration from environment variables and .env file.

    Keyword arguments whose value is None are ignored so that unset CLI flags
    fall through to the environment.
    """
    return ProxyConfig(**{k: v for k, v in overrides.items() if v is not None})
