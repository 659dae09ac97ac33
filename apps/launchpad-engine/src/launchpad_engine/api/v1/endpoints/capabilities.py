"""System capabilities endpoint."""

import shutil
from pathlib import Path

import psutil
from fastapi import APIRouter

from launchpad_engine.core.jobs import JobManager
from launchpad_engine.services.upload import UPLOADERS

router = APIRouter()

REQUIRED_TOOLS = ("rsync", "npx", "pod", "fastlane", "xcrun", "security")


@router.get("/capabilities")
async def get_capabilities() -> dict:
    """Get build host capabilities."""
    config = JobManager.get_instance().config

    tools = {name: shutil.which(name) is not None for name in REQUIRED_TOOLS}

    # Storage info
    build_dir = Path(config.BUILD_DIR)
    try:
        usage = psutil.disk_usage(str(build_dir))
        storage_info = {
            "buildDir": str(build_dir),
            "freeSpace": usage.free,
            "totalSpace": usage.total,
            "percentUsed": usage.percent,
        }
    except OSError:
        storage_info = {
            "buildDir": str(build_dir),
            "freeSpace": 0,
            "totalSpace": 0,
            "percentUsed": 0.0,
        }

    # Workspaces left behind by failed (or retained) builds
    try:
        retained = sorted(p.name for p in build_dir.iterdir() if p.is_dir())
    except OSError:
        retained = []

    return {
        "tools": tools,
        "ready": all(tools.values()),
        "upload": {
            "backend": config.UPLOAD_BACKEND,
            "available": sorted(UPLOADERS),
        },
        "credentials": {
            "apiKey": bool(config.ASC_KEY_ID and config.ASC_ISSUER_ID and (config.ASC_KEY_PATH or config.ASC_KEY_CONTENT)),
            "teamId": bool(config.TEAM_ID),
        },
        "storage": storage_info,
        "workspaces": {
            "retained": len(retained),
            "jobIds": retained,
        },
        "workers": config.WORKER_CONCURRENCY,
    }
