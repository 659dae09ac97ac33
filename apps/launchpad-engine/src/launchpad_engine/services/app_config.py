"""Expo app configuration reader."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from launchpad_engine.core.errors import AppConfigError
from launchpad_engine.services.build_log import BuildLogger
from launchpad_engine.services.process import ProcessExecutor

logger = logging.getLogger(__name__)

DYNAMIC_CONFIG_FILES = ("app.config.js", "app.config.ts")


class AppConfigService:
    """Reads the Expo config of a project to find its iOS identity."""

    def __init__(self, executor: Optional[ProcessExecutor] = None):
        self.executor = executor or ProcessExecutor()

    async def read_config(self, project_path: Path, build_logger: BuildLogger) -> Dict[str, Any]:
        """Read the Expo config from app.json, or evaluate app.config.js/ts."""
        app_json = project_path / "app.json"
        if app_json.exists():
            try:
                data = json.loads(app_json.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise AppConfigError(f"Could not parse {app_json}: {e}") from e
            if not isinstance(data, dict):
                raise AppConfigError(f"{app_json} must contain a JSON object")
            # app.json wraps the config in an "expo" key
            config = data.get("expo", data)
            if not isinstance(config, dict):
                raise AppConfigError(f"\"expo\" in {app_json} must be an object, got {type(config).__name__}")
            return config

        if any((project_path / name).exists() for name in DYNAMIC_CONFIG_FILES):
            result = await self.executor.run(
                "npx", ["expo", "config", "--json", "--type", "public"],
                build_logger,
                cwd=project_path,
            )
            if result.exit_code != 0:
                raise AppConfigError(f"Could not evaluate app config in {project_path}")
            try:
                config = json.loads(result.stdout)
            except ValueError as e:
                raise AppConfigError(f"expo config returned invalid JSON: {e}") from e
            if not isinstance(config, dict):
                raise AppConfigError("expo config did not return a JSON object")
            return config

        raise AppConfigError(f"Could not find app.json or app.config.js in {project_path}")

    async def get_bundle_identifier(self, project_path: Path, build_logger: BuildLogger) -> str:
        """Get the iOS bundle identifier from the Expo config."""
        config = await self.read_config(project_path, build_logger)
        ios = config.get("ios") or {}
        if not isinstance(ios, dict):
            raise AppConfigError(f"\"ios\" in the Expo config must be an object, got {type(ios).__name__}")
        bundle_id = ios.get("bundleIdentifier")
        if not bundle_id:
            raise AppConfigError(
                "No ios.bundleIdentifier found in app.json. "
                'Please add it to your Expo config: { "expo": { "ios": { "bundleIdentifier": "com.example.app" } } }'
            )
        return bundle_id
