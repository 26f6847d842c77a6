"""Tests for settings, engine configuration and tenant loading."""

import pytest
from pydantic import ValidationError

from src.core.config import EngineConfig, RetryConfig, Settings, load_engine_config
from src.core.exceptions import ConfigurationError, TenantNotFoundError
from src.core.tenant_loader import clear_cache, list_tenants, load_tenant_config
from tests.conftest import TENANT_ID, TENANTS_DIR


def test_settings_defaults():
    """Settings have sensible defaults."""
    s = Settings(_env_file=None)

    assert s.moderation_provider == "openai"
    assert s.llm_timeout_seconds == 30.0
    assert s.template_fallback == ""
    assert "email" in s.redact_fields
    assert s.resolved_tenants_dir == s.config_dir / "tenants"


def test_settings_from_env(monkeypatch):
    """Settings can be overridden via environment variables."""
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("LLM_COMPLETION_PROVIDER", "deepseek")
    monkeypatch.setenv("MODERATION_PROVIDER", "none")

    s = Settings(_env_file=None)

    assert s.debug
    assert s.llm_completion_provider == "deepseek"
    assert s.moderation_provider == "none"


def test_settings_validation():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, port=70000)

    with pytest.raises(ValidationError):
        Settings(_env_file=None, llm_timeout_seconds=0)


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()

        assert config.completion_retry.max_attempts == 3
        assert config.notification_retry.max_attempts == 2
        assert config.turn.max_completion_rounds == 4
        assert config.registry.idle_timeout_seconds == 1800.0

    def test_retry_bounds_validated(self):
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValidationError):
            RetryConfig(base_delay=4.0, max_delay=1.0)

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "engine_config.yaml"
        path.write_text(
            "completion_retry:\n"
            "  max_attempts: 5\n"
            "  base_delay: 0.25\n"
            "  max_delay: 2.0\n"
            "registry:\n"
            "  idle_timeout_seconds: 60\n"
        )

        config = load_engine_config(path)

        assert config.completion_retry.max_attempts == 5
        assert config.completion_retry.base_delay == 0.25
        assert config.registry.idle_timeout_seconds == 60
        # Unset sections keep their defaults
        assert config.turn.max_completion_rounds == 4

    def test_missing_or_empty_file_gives_defaults(self, tmp_path):
        empty = tmp_path / "empty.yaml"
        empty.write_text("")

        assert load_engine_config(tmp_path / "missing.yaml") == EngineConfig()
        assert load_engine_config(empty) == EngineConfig()

    def test_shipped_config_is_valid(self):
        config = load_engine_config()

        assert config.turn.max_completion_rounds >= 1


class TestTenantLoader:
    @pytest.fixture(autouse=True)
    def fresh_cache(self):
        clear_cache()
        yield
        clear_cache()

    def test_loads_sample_tenant(self):
        tenant = load_tenant_config(TENANT_ID, tenants_dir=TENANTS_DIR)

        assert tenant.tenant_id == TENANT_ID
        assert tenant.tool("submit_report").sequence == "file_report"
        assert tenant.session_type("maintenance").required_fields == ["postal_code", "issue"]
        assert "email_report" in tenant.buttons

    def test_cached_after_first_load(self):
        first = load_tenant_config(TENANT_ID, tenants_dir=TENANTS_DIR)
        second = load_tenant_config(TENANT_ID, tenants_dir=TENANTS_DIR)

        assert first is second

    def test_unknown_tenant(self, tmp_path):
        with pytest.raises(TenantNotFoundError):
            load_tenant_config("nobody", tenants_dir=tmp_path)

    def test_malformed_tenant_id(self):
        with pytest.raises(TenantNotFoundError):
            load_tenant_config("../etc/passwd", tenants_dir=TENANTS_DIR)

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "broken.yaml").write_text("tools: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_tenant_config("broken", tenants_dir=tmp_path)

    def test_mismatched_tenant_id(self, tmp_path):
        (tmp_path / "alpha.yaml").write_text("tenant_id: beta\n")

        with pytest.raises(ConfigurationError):
            load_tenant_config("alpha", tenants_dir=tmp_path)

    def test_unknown_sequence_reference(self, tmp_path):
        (tmp_path / "alpha.yaml").write_text(
            "tools:\n"
            "  - name: submit\n"
            "    sequence: does_not_exist\n"
        )

        with pytest.raises(ConfigurationError):
            load_tenant_config("alpha", tenants_dir=tmp_path)

    def test_list_tenants(self, tmp_path):
        (tmp_path / "alpha.yaml").write_text("")
        (tmp_path / "beta.yaml").write_text("")
        (tmp_path / "Not Valid.yaml").write_text("")

        assert list_tenants(tmp_path) == ["alpha", "beta"]
        assert TENANT_ID in list_tenants(TENANTS_DIR)
