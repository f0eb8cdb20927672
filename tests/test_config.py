"""
Tests for configuration loading and validation.
"""

import logging
import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from config import AppConfig, load_config
from logger import LOGGER_NAME, mask_secret, setup_logging
from utils import dump_config, load_env_files


# ============================================================================
# Environment Loading Tests
# ============================================================================

class TestFromEnv:
    """Test reading AppConfig from the environment."""

    def test_from_env_defaults(self):
        """Test loading config with default values."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = AppConfig.from_env()
        assert cfg.openrouter_base_url == "https://openrouter.ai/api/v1"
        assert cfg.openrouter_http_referer == "http://localhost:5050"
        assert cfg.openrouter_x_title == "OpenRouter API Wrapper"
        assert cfg.fast_path_url == "https://api.deepseek.com/chat/completions"
        assert cfg.fast_path_models == {"deepseek/deepseek-chat": "deepseek-chat"}
        assert cfg.stream_mode == "relay"
        assert cfg.retry_policy == "schedule"
        assert cfg.max_attempts == 3
        assert cfg.retry_schedule_ms == (500, 1000, 3000)
        assert cfg.backoff_base_ms == 1000
        assert cfg.backoff_max_ms == 10000
        assert cfg.stall_timeout_s == 15.0
        assert cfg.initial_timeout_s == 5.0
        assert cfg.retry_after_partial is True
        assert cfg.history_enabled is False
        assert cfg.history_dir == "history"
        assert cfg.port == 5050
        assert cfg.fast_path_enabled is False

    def test_from_env_custom_values(self):
        """Test loading config with custom environment values."""
        env_vars = {
            "OPENROUTER_BASE_URL": "https://proxy.example/api/v1/",
            "OPENROUTER_API_KEY": "sk-or-custom",
            "DEEPSEEK_API_KEY": "sk-ds",
            "FAST_PATH_MODELS": "a/b=b, c/d = d ,broken",
            "STREAM_MODE": "Aggregate",
            "RETRY_POLICY": "exponential",
            "MAX_ATTEMPTS": "6",
            "RETRY_SCHEDULE_MS": "100, x, 200",
            "BACKOFF_BASE_MS": "250",
            "STALL_TIMEOUT_S": "30",
            "RETRY_AFTER_PARTIAL": "no",
            "HISTORY_ENABLED": "yes",
            "HISTORY_DIR": "/tmp/hist",
            "PORT": "9000",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = AppConfig.from_env()
        assert cfg.openrouter_base_url == "https://proxy.example/api/v1"
        assert cfg.openrouter_api_key == "sk-or-custom"
        assert cfg.fast_path_api_key == "sk-ds"
        assert cfg.fast_path_models == {"a/b": "b", "c/d": "d"}
        assert cfg.fast_path_enabled is True
        assert cfg.stream_mode == "aggregate"
        assert cfg.retry_policy == "exponential"
        assert cfg.max_attempts == 6
        assert cfg.retry_schedule_ms == (100, 200)
        assert cfg.backoff_base_ms == 250
        assert cfg.stall_timeout_s == 30.0
        assert cfg.retry_after_partial is False
        assert cfg.history_enabled is True
        assert cfg.history_dir == "/tmp/hist"
        assert cfg.port == 9000

    def test_malformed_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"MAX_ATTEMPTS": "many", "STALL_TIMEOUT_S": "soon"}, clear=True):
            cfg = AppConfig.from_env()
        assert cfg.max_attempts == 3
        assert cfg.stall_timeout_s == 15.0

    def test_load_config(self):
        with patch.dict(os.environ, {"PORT": "7000"}, clear=True):
            assert load_config().port == 7000

    def test_load_env_files_from_working_directory(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("STREAM_MODE=aggregate\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        with patch.dict(os.environ, {"STREAM_MODE": "relay"}):
            load_env_files()
            assert os.environ["STREAM_MODE"] == "aggregate"


# ============================================================================
# Validation Tests
# ============================================================================

class TestValidate:
    """Test AppConfig.validate."""

    def test_validate_success(self, test_config):
        """Test successful config validation."""
        test_config.validate()  # Should not raise

    @pytest.mark.parametrize(
        "overrides, match",
        [
            ({"stream_mode": "buffer"}, "STREAM_MODE"),
            ({"retry_policy": "random"}, "RETRY_POLICY"),
            ({"max_attempts": 0}, "MAX_ATTEMPTS"),
            ({"retry_schedule_ms": ()}, "RETRY_SCHEDULE_MS"),
            ({"retry_schedule_ms": (1000, 500)}, "non-decreasing"),
            ({"backoff_base_ms": 5000, "backoff_max_ms": 1000}, "BACKOFF_MAX_MS"),
            ({"stall_timeout_s": 0}, "STALL_TIMEOUT_S"),
            ({"initial_timeout_s": -1}, "INITIAL_TIMEOUT_S"),
            ({"history_enabled": True, "history_dir": ""}, "HISTORY_DIR"),
            ({"openrouter_base_url": ""}, "OPENROUTER_BASE_URL"),
        ],
    )
    def test_validate_rejects(self, test_config, overrides, match):
        cfg = replace(test_config, **overrides)
        with pytest.raises(ValueError, match=match):
            cfg.validate()


# ============================================================================
# Logging Tests
# ============================================================================

class TestLogging:
    """Test logging setup and secret masking."""

    def test_mask_secret(self):
        assert mask_secret("") == ""
        assert mask_secret("short") == "*****"
        assert mask_secret("sk-or-v1-abcdefghijkl") == "sk-or-...ijkl"

    def test_setup_logging_falls_back_to_stream(self, tmp_path):
        bad_path = str(tmp_path / "missing-dir" / "relay.log")
        with patch.dict(os.environ, {"LOG_LEVEL": "INFO", "LOG_COLOR": "false"}):
            logger = setup_logging(bad_path)
        assert logger.name == LOGGER_NAME
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert type(logger.handlers[0]) is logging.StreamHandler

    def test_setup_logging_writes_file(self, tmp_path):
        path = tmp_path / "relay.log"
        with patch.dict(os.environ, {"LOG_LEVEL": "DEBUG", "LOG_COLOR": "false"}):
            logger = setup_logging(str(path))
        logger.info("hello from test")
        for h in logger.handlers:
            h.flush()
        assert "hello from test" in path.read_text(encoding="utf-8")

    def test_dump_config_masks_keys(self, test_config, caplog):
        logger = logging.getLogger(LOGGER_NAME)
        logger.propagate = True
        try:
            with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
                dump_config(replace(test_config, openrouter_api_key="sk-or-v1-supersecretvalue"))
        finally:
            logger.propagate = False
        assert "sk-or-v1-supersecretvalue" not in caplog.text
        assert "sk-or-...alue" in caplog.text
