"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from launchpad_engine.core.config import RetentionPolicy, Settings


class TestSettings:
    """Tests for settings validation."""

    def test_defaults(self, tmp_path):
        config = Settings(LAUNCHPAD_HOME=tmp_path)
        assert config.WORKSPACE_RETENTION is RetentionPolicy.KEEP_ON_FAILURE
        assert config.UPLOAD_BACKEND == "altool"
        assert config.BUILD_DIR == tmp_path / "builds"

    def test_retention_parsed(self, tmp_path):
        config = Settings(LAUNCHPAD_HOME=tmp_path, WORKSPACE_RETENTION="always_keep")
        assert config.WORKSPACE_RETENTION is RetentionPolicy.ALWAYS_KEEP

    def test_rejects_unknown_retention(self, tmp_path):
        with pytest.raises(ValidationError, match="WORKSPACE_RETENTION"):
            Settings(LAUNCHPAD_HOME=tmp_path, WORKSPACE_RETENTION="keep-on-failure")

    def test_rejects_unknown_upload_backend(self, tmp_path):
        with pytest.raises(ValidationError, match="UPLOAD_BACKEND"):
            Settings(LAUNCHPAD_HOME=tmp_path, UPLOAD_BACKEND="altol")
