"""Tests for Expo app config reading."""

import json

import pytest

from launchpad_engine.core.errors import AppConfigError
from launchpad_engine.services.app_config import AppConfigService

from conftest import BUNDLE_ID, FakeExecutor


class TestAppConfigService:
    """Tests for AppConfigService."""

    @pytest.mark.asyncio
    async def test_reads_bundle_id_from_app_json(self, build_logger, fake_executor, expo_project):
        service = AppConfigService(fake_executor)
        assert await service.get_bundle_identifier(expo_project, build_logger) == BUNDLE_ID
        assert fake_executor.calls == []

    @pytest.mark.asyncio
    async def test_evaluates_dynamic_config(self, build_logger, tmp_path):
        (tmp_path / "app.config.ts").write_text("export default {};\n")
        executor = FakeExecutor(expo_config={"name": "Dyn", "ios": {"bundleIdentifier": "com.example.dyn"}})

        service = AppConfigService(executor)
        assert await service.get_bundle_identifier(tmp_path, build_logger) == "com.example.dyn"
        assert executor.calls[0]["args"][:2] == ["expo", "config"]

    @pytest.mark.asyncio
    async def test_missing_bundle_identifier(self, build_logger, fake_executor, tmp_path):
        (tmp_path / "app.json").write_text(json.dumps({"expo": {"name": "NoIos"}}))

        with pytest.raises(AppConfigError, match="bundleIdentifier"):
            await AppConfigService(fake_executor).get_bundle_identifier(tmp_path, build_logger)

    @pytest.mark.asyncio
    async def test_no_config_at_all(self, build_logger, fake_executor, tmp_path):
        with pytest.raises(AppConfigError):
            await AppConfigService(fake_executor).read_config(tmp_path, build_logger)

    @pytest.mark.asyncio
    async def test_expo_value_must_be_object(self, build_logger, fake_executor, tmp_path):
        (tmp_path / "app.json").write_text(json.dumps({"expo": "HelloApp"}))

        with pytest.raises(AppConfigError, match='"expo" .* must be an object, got str'):
            await AppConfigService(fake_executor).get_bundle_identifier(tmp_path, build_logger)

    @pytest.mark.asyncio
    async def test_ios_value_must_be_object(self, build_logger, fake_executor, tmp_path):
        (tmp_path / "app.json").write_text(json.dumps({"expo": {"ios": "com.example.hello"}}))

        with pytest.raises(AppConfigError, match='"ios" .* must be an object, got str'):
            await AppConfigService(fake_executor).get_bundle_identifier(tmp_path, build_logger)
