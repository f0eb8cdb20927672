"""Configuration management for the OpenRouter relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Tuple

STREAM_MODES = ("relay", "aggregate")
RETRY_POLICIES = ("schedule", "exponential")
TRUTHY = frozenset({"1", "true", "yes", "y", "on"})


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    raw = (os.getenv(name) or "").strip().lower()
    return raw in TRUTHY if raw else default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable; unset, empty or malformed values give `default`."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    """Get float environment variable; unset, empty or malformed values give `default`."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback (an empty value is kept)."""
    return os.environ.get(name, default)


def _csv_ints(name: str, default: str) -> Tuple[int, ...]:
    """Parse comma-separated integers; malformed entries are skipped."""
    v = os.getenv(name) or default
    out = []
    for item in v.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            out.append(int(item))
        except ValueError:
            continue
    return tuple(out)


def _csv_map(name: str, default: str) -> Dict[str, str]:
    """Parse `a=b,c=d` into a mapping."""
    v = os.getenv(name)
    if v is None:
        v = default
    out: Dict[str, str] = {}
    for item in v.split(","):
        if "=" not in item:
            continue
        key, _, value = item.partition("=")
        key, value = key.strip(), value.strip()
        if key and value:
            out[key] = value
    return out


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Default provider (OpenRouter)
    openrouter_base_url: str
    openrouter_api_key: str
    openrouter_http_referer: str
    openrouter_x_title: str

    # Fast-path provider, tried once before the default provider
    fast_path_url: str
    fast_path_api_key: str
    fast_path_models: Dict[str, str]

    # Relay behaviour
    stream_mode: str

    # Retry policy
    retry_policy: str
    max_attempts: int
    retry_schedule_ms: Tuple[int, ...]
    backoff_base_ms: int
    backoff_max_ms: int
    stall_timeout_s: float
    initial_timeout_s: float
    retry_after_partial: bool

    # Timeouts and limits
    request_timeout_s: float
    max_request_bytes: int

    # History sink
    history_enabled: bool
    history_dir: str

    # Debug traffic logging (VERY VERBOSE)
    debug_sse_traffic: bool
    debug_sse_traffic_log_path: str
    debug_sse_traffic_truncate_bytes: int

    # Outbound proxies
    https_proxy: str
    http_proxy: str

    # Server settings
    port: int
    log_level: str
    log_path: str
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            openrouter_base_url=_env_str("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/"),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY", ""),
            openrouter_http_referer=os.getenv("OPENROUTER_HTTP_REFERER", "http://localhost:5050"),
            openrouter_x_title=os.getenv("OPENROUTER_X_TITLE", "OpenRouter API Wrapper"),
            fast_path_url=_env_str("FAST_PATH_URL", "https://api.deepseek.com/chat/completions"),
            fast_path_api_key=os.getenv("DEEPSEEK_API_KEY", ""),
            fast_path_models=_csv_map("FAST_PATH_MODELS", "deepseek/deepseek-chat=deepseek-chat"),
            stream_mode=_env_str("STREAM_MODE", "relay").strip().lower(),
            retry_policy=_env_str("RETRY_POLICY", "schedule").strip().lower(),
            max_attempts=_env_int("MAX_ATTEMPTS", 3),
            retry_schedule_ms=_csv_ints("RETRY_SCHEDULE_MS", "500,1000,3000"),
            backoff_base_ms=_env_int("BACKOFF_BASE_MS", 1000),
            backoff_max_ms=_env_int("BACKOFF_MAX_MS", 10000),
            stall_timeout_s=_env_float("STALL_TIMEOUT_S", 15.0),
            initial_timeout_s=_env_float("INITIAL_TIMEOUT_S", 5.0),
            retry_after_partial=_env_bool("RETRY_AFTER_PARTIAL", True),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 100 * 1024 * 1024),
            history_enabled=_env_bool("HISTORY_ENABLED", False),
            history_dir=_env_str("HISTORY_DIR", "history"),
            debug_sse_traffic=_env_bool("DEBUG_SSE_TRAFFIC", False),
            debug_sse_traffic_log_path=_env_str("DEBUG_SSE_TRAFFIC_LOG_PATH", "traffic_sse.log"),
            debug_sse_traffic_truncate_bytes=_env_int("DEBUG_SSE_TRAFFIC_TRUNCATE_BYTES", 0),  # 0 = no truncate
            https_proxy=_env_str("HTTPS_PROXY", ""),
            http_proxy=_env_str("HTTP_PROXY", ""),
            port=_env_int("PORT", 5050),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/openrouter-relay/relay.log"),
            user_agent=_env_str("USER_AGENT", "openrouter-relay/1.0"),
        )

    @property
    def fast_path_enabled(self) -> bool:
        return bool(self.fast_path_api_key and self.fast_path_url and self.fast_path_models)

    def validate(self) -> None:
        """Validate configuration."""
        if not self.openrouter_base_url:
            raise ValueError("OPENROUTER_BASE_URL must be non-empty")
        if self.stream_mode not in STREAM_MODES:
            raise ValueError(f"STREAM_MODE must be one of {', '.join(STREAM_MODES)}")
        if self.retry_policy not in RETRY_POLICIES:
            raise ValueError(f"RETRY_POLICY must be one of {', '.join(RETRY_POLICIES)}")
        if self.max_attempts <= 0:
            raise ValueError("MAX_ATTEMPTS must be > 0")
        if not self.retry_schedule_ms:
            raise ValueError("RETRY_SCHEDULE_MS must list at least one delay")
        if any(d < 0 for d in self.retry_schedule_ms):
            raise ValueError("RETRY_SCHEDULE_MS delays must be >= 0")
        if list(self.retry_schedule_ms) != sorted(self.retry_schedule_ms):
            raise ValueError("RETRY_SCHEDULE_MS must be non-decreasing")
        if self.backoff_base_ms < 0:
            raise ValueError("BACKOFF_BASE_MS must be >= 0")
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("BACKOFF_MAX_MS must be >= BACKOFF_BASE_MS")
        if self.stall_timeout_s <= 0:
            raise ValueError("STALL_TIMEOUT_S must be > 0")
        if self.initial_timeout_s <= 0:
            raise ValueError("INITIAL_TIMEOUT_S must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if self.history_enabled and not self.history_dir:
            raise ValueError("HISTORY_DIR must be non-empty when HISTORY_ENABLED")
        if self.debug_sse_traffic_truncate_bytes < 0:
            raise ValueError("DEBUG_SSE_TRAFFIC_TRUNCATE_BYTES must be >= 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
