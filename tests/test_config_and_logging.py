"""
Tests for configuration loading and structured logging.
"""

import json
import logging
import sys

import pytest

from hybrid_orchestrator.core.config import DEFAULT_SYNTHESIS_TEMPLATE, OrchestratorConfig, VaultConfig
from hybrid_orchestrator.core.exceptions import ConfigurationError
from hybrid_orchestrator.utils.logger import (
    JobContextFilter,
    LoggerContext,
    StructuredFormatter,
    clear_log_context,
    get_log_context,
    set_log_context,
    setup_logger,
)


class TestOrchestratorConfig:

    def test_defaults(self):
        config = OrchestratorConfig()
        assert config.max_concurrent_jobs == 10
        assert config.job_timeout_seconds == 300.0
        assert config.synthesis_prompt_template == DEFAULT_SYNTHESIS_TEMPLATE
        assert config.circuit_breaker.failure_threshold == 3

    def test_from_dict(self):
        config = OrchestratorConfig.from_dict({
            "max_concurrent_calls_per_provider": "2",
            "default_synthesis_model": "judge",
            "fallback_models": {"gpt": "claude"},
            "circuit_breaker": {"failure_threshold": 5, "cooldown_seconds": 10},
        })
        assert config.max_concurrent_calls_per_provider == 2
        assert config.default_synthesis_model == "judge"
        assert config.fallback_models == {"gpt": "claude"}
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.cooldown_seconds == 10.0

    @pytest.mark.parametrize("kwargs", [
        {"max_concurrent_jobs": 0},
        {"max_concurrent_calls_per_provider": 0},
        {"provider_concurrency": {"openai": 0}},
        {"job_timeout_seconds": 0},
        {"finished_job_retention_seconds": -1},
        {"fallback_models": {"gpt": "gpt"}},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError) as exc_info:
            OrchestratorConfig(**kwargs)
        assert exc_info.value.error_code == "CONFIGURATION_ERROR"


class TestVaultConfig:

    def test_from_env(self):
        config = VaultConfig.from_env({
            "HYBRID_VAULT_SECRET": "s3cret",
            "HYBRID_VAULT_KDF_ITERATIONS": "200000",
            "HYBRID_VAULT_REFRESH_TIMEOUT": "5",
        })
        assert config.secret == "s3cret"
        assert config.kdf_iterations == 200000
        assert config.refresh_timeout_seconds == 5.0

    def test_from_env_requires_secret(self):
        with pytest.raises(ConfigurationError):
            VaultConfig.from_env({})

    def test_from_env_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            VaultConfig.from_env({"HYBRID_VAULT_SECRET": "s", "HYBRID_VAULT_KDF_ITERATIONS": "lots"})

    def test_rejects_weak_settings(self):
        with pytest.raises(ConfigurationError):
            VaultConfig(secret="s", kdf_iterations=1000)
        with pytest.raises(ConfigurationError):
            VaultConfig(secret="")

    def test_repr_hides_secret(self):
        assert "hunter2" not in repr(VaultConfig(secret="hunter2"))

    def test_from_dict(self):
        config = VaultConfig.from_dict({"secret": "s", "expiry_skew_seconds": 30})
        assert config.expiry_skew_seconds == 30.0
        assert config.circuit_breaker.cooldown_seconds == 30.0


def _record(message="hello", **extra):
    record = logging.LogRecord("hybrid_orchestrator.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:

    def test_formatter_emits_json_with_extras(self):
        output = json.loads(StructuredFormatter().format(_record(model_id="gpt")))

        assert output["level"] == "INFO"
        assert output["message"] == "hello"
        assert output["extra"] == {"model_id": "gpt"}

    def test_formatter_includes_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        output = json.loads(StructuredFormatter().format(record))
        assert output["exception"]["type"] == "ValueError"
        assert output["exception"]["message"] == "bad"

    def test_context_manager_sets_and_restores(self):
        clear_log_context()
        set_log_context(component="tests")
        with LoggerContext(job_id="j1"):
            assert get_log_context() == {"component": "tests", "job_id": "j1"}
        assert get_log_context() == {"component": "tests"}
        clear_log_context()

    def test_filter_copies_context_without_overwriting(self):
        record = _record(job_id="explicit")
        with LoggerContext(job_id="ctx", user_id="alice"):
            assert JobContextFilter().filter(record) is True

        assert record.job_id == "explicit"
        assert record.user_id == "alice"

    def test_setup_logger_is_idempotent(self, tmp_path):
        log_file = tmp_path / "logs" / "orchestrator.log"
        logger = setup_logger("hybrid_orchestrator.tests.setup", level="DEBUG", log_file=str(log_file))
        again = setup_logger("hybrid_orchestrator.tests.setup", level="DEBUG", log_file=str(log_file))

        assert logger is again
        assert len(logger.handlers) == 2
        with LoggerContext(job_id="j42"):
            logger.info("written")
        for handler in logger.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert line["message"] == "written"
        assert line["extra"]["job_id"] == "j42"

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
