"""Tests for core/config.py -- Settings validation policy."""

import pytest
from pydantic import ValidationError

from core.config import Settings


class TestSettings:
    def test_defaults(self):
        s = Settings(debug=True)
        assert s.session_ttl_days == 30
        assert s.session_validation_interval == 300
        assert s.min_password_length == 6
        assert s.database_url.startswith("sqlite:///")

    def test_production_requires_https(self):
        with pytest.raises(ValidationError, match="https"):
            Settings(debug=False, provider_endpoint="http://api.example.com/v1", provider_project_id="p1")

    def test_production_requires_project_id(self):
        with pytest.raises(ValidationError, match="PROVIDER_PROJECT_ID"):
            Settings(debug=False, provider_endpoint="https://api.example.com/v1", provider_project_id="")

    def test_production_ok(self):
        s = Settings(debug=False, provider_endpoint="https://api.example.com/v1", provider_project_id="p1")
        assert s.provider_project_id == "p1"

    def test_debug_allows_local_http(self):
        s = Settings(debug=True, provider_endpoint="http://localhost/v1", provider_project_id="")
        assert s.provider_endpoint == "http://localhost/v1"

    @pytest.mark.parametrize(
        "field",
        ["session_ttl_days", "session_validation_interval", "remote_timeout_seconds", "min_password_length"],
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(debug=True, **{field: 0})

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SESSION_TTL_DAYS", "7")
        monkeypatch.setenv("PROVIDER_PROJECT_ID", "from-env")
        s = Settings(debug=True)
        assert s.session_ttl_days == 7
        assert s.provider_project_id == "from-env"
