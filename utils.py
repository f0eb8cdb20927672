"""Utility functions for the OpenRouter relay."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)


def load_env_files() -> None:
    """Apply `.env` from the program directory, then from the working directory."""
    candidates = []
    for path in (Path(__file__).resolve().parent / ".env", Path.cwd() / ".env"):
        if path not in candidates:
            candidates.append(path)

    applied = False
    for path in candidates:
        if not path.is_file():
            log.info("No .env at %s", path)
            continue
        applied = load_dotenv(dotenv_path=path, override=True) or applied
        log.info("Loaded .env from %s", path)

    if not applied:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== OpenRouter relay startup config ===")
    log.info("OPENROUTER_BASE_URL=%s", config.openrouter_base_url)
    log.info(
        "OPENROUTER_API_KEY_set=%s value=%s",
        bool(config.openrouter_api_key),
        mask_secret(config.openrouter_api_key),
    )
    log.info("OPENROUTER_HTTP_REFERER=%s", config.openrouter_http_referer)
    log.info("OPENROUTER_X_TITLE=%s", config.openrouter_x_title)
    log.info("FAST_PATH_URL=%s enabled=%s", config.fast_path_url, config.fast_path_enabled)
    log.info("DEEPSEEK_API_KEY=%s", mask_secret(config.fast_path_api_key))
    log.info("FAST_PATH_MODELS=%s", dict(sorted(config.fast_path_models.items())))
    log.info("STREAM_MODE=%s", config.stream_mode)
    log.info("RETRY_POLICY=%s MAX_ATTEMPTS=%s", config.retry_policy, config.max_attempts)
    if config.retry_policy == "schedule":
        log.info("RETRY_SCHEDULE_MS=%s", list(config.retry_schedule_ms))
    else:
        log.info("BACKOFF_BASE_MS=%s BACKOFF_MAX_MS=%s", config.backoff_base_ms, config.backoff_max_ms)
    log.info("INITIAL_TIMEOUT_S=%s STALL_TIMEOUT_S=%s", config.initial_timeout_s, config.stall_timeout_s)
    log.info("RETRY_AFTER_PARTIAL=%s", config.retry_after_partial)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("HISTORY_ENABLED=%s HISTORY_DIR=%s", config.history_enabled, config.history_dir)
    log.info("DEBUG_SSE_TRAFFIC=%s", config.debug_sse_traffic)
    if config.debug_sse_traffic:
        log.info("DEBUG_SSE_TRAFFIC_LOG_PATH=%s", config.debug_sse_traffic_log_path)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("=======================================")
