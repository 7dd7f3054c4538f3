"""
Tests for scim_provider/shared/core/config.py - Configuration management
"""
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from scim_provider.shared.core.config import Settings


class TestSettingsValidation:
    """Settings validation for the SCIM surface and runtime environment."""

    def test_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(_env_file=None)
        assert settings.SCIM_BASE_PATH == "/scim/v2"
        assert settings.SCIM_DEFAULT_COUNT == 100
        assert settings.SCIM_MAX_RESULTS == 200
        assert settings.SCIM_LIST_MANAGED_ONLY is True
        assert settings.is_production is False

    def test_base_path_trailing_slash_is_stripped(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(SCIM_BASE_PATH="/identity/scim/", _env_file=None)
        assert settings.SCIM_BASE_PATH == "/identity/scim"

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"SCIM_BASE_PATH": "scim/v2"}, "SCIM_BASE_PATH must start with '/'"),
            ({"SCIM_BASE_PATH": "/"}, "SCIM_BASE_PATH must not be the server root"),
            ({"SCIM_MAX_RESULTS": 0}, "SCIM_MAX_RESULTS must be at least 1"),
            (
                {"SCIM_DEFAULT_COUNT": 500, "SCIM_MAX_RESULTS": 200},
                "SCIM_DEFAULT_COUNT must be between 0 and SCIM_MAX_RESULTS",
            ),
            ({"DATABASE_URL": "  "}, "DATABASE_URL is not set"),
            (
                {"TESTING": True, "ENVIRONMENT": "production"},
                "TESTING must be false",
            ),
        ],
    )
    def test_invalid_settings(self, overrides, message):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                Settings(_env_file=None, **overrides)
        assert message in str(exc.value)

    def test_values_come_from_environment(self):
        env = {
            "SCIM_REQUIRE_IF_MATCH": "true",
            "SCIM_EXTRA_SCHEMA_FILES": '["/etc/scim/acme.json"]',
        }
        with patch.dict("os.environ", env, clear=True):
            settings = Settings(_env_file=None)
        assert settings.SCIM_REQUIRE_IF_MATCH is True
        assert settings.SCIM_EXTRA_SCHEMA_FILES == ["/etc/scim/acme.json"]
