"""Application configuration."""

import os
from enum import Enum
from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings


class RetentionPolicy(str, Enum):
    """What happens to a job's workspace when the pipeline ends."""
    KEEP_ON_FAILURE = "keep_on_failure"
    ALWAYS_REMOVE = "always_remove"
    ALWAYS_KEEP = "always_keep"

    def should_remove(self, success: bool) -> bool:
        if self == RetentionPolicy.ALWAYS_REMOVE:
            return True
        if self == RetentionPolicy.ALWAYS_KEEP:
            return False
        return success


class Settings(BaseSettings):
    """Application settings."""
    
    # App info
    VERSION: str = "1.0.0"
    APP_NAME: str = "LaunchPad Engine"
    DEBUG: bool = False
    
    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 3000
    CORS_ORIGINS: List[str] = ["http://localhost:3001"]
    API_KEY: Optional[str] = None  # required as x-api-key on /v1 when set

    # Paths
    LAUNCHPAD_HOME: Path = Path.home() / "LAUNCHPAD"
    DATABASE_PATH: Path = Path.home() / "LAUNCHPAD" / "launchpad.db"
    BUILD_DIR: Path = Path.home() / "LAUNCHPAD" / "builds"
    ARTIFACTS_DIR: Path = Path.home() / "LAUNCHPAD" / "artifacts"
    LOGS_DIR: Path = Path.home() / "LAUNCHPAD" / "logs"
    
    # App Store Connect API key (signing + upload)
    ASC_KEY_ID: Optional[str] = None
    ASC_ISSUER_ID: Optional[str] = None
    ASC_KEY_PATH: Optional[str] = None
    ASC_KEY_CONTENT: Optional[str] = None
    TEAM_ID: Optional[str] = None
    
    # Pipeline
    UPLOAD_BACKEND: Literal["altool", "transporter"] = "altool"
    TRANSPORTER_PATH: str = "/Applications/Transporter.app/Contents/itms/bin/iTMSTransporter"
    WORKSPACE_RETENTION: RetentionPolicy = RetentionPolicy.KEEP_ON_FAILURE
    STRICT_WORKSPACE_MATCH: bool = True
    KEYCHAIN_LOCK_TIMEOUT: int = 21600  # 6 hours
    LOG_FLUSH_INTERVAL: float = 0.5
    LOG_ECHO: bool = True
    
    # Job queue
    WORKER_CONCURRENCY: int = 1
    LOCK_DURATION_SECONDS: int = 3600  # compiles can run tens of minutes
    POLL_INTERVAL: float = 2.0
    STATUS_TTL_SECONDS: int = 60 * 60 * 24 * 7  # 7 days
    
    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"
    
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Everything lives under LAUNCHPAD_HOME unless placed explicitly
        home = self.LAUNCHPAD_HOME
        if "DATABASE_PATH" not in kwargs and not os.environ.get("DATABASE_PATH"):
            self.DATABASE_PATH = home / "launchpad.db"
        if "BUILD_DIR" not in kwargs and not os.environ.get("BUILD_DIR"):
            self.BUILD_DIR = home / "builds"
        if "ARTIFACTS_DIR" not in kwargs and not os.environ.get("ARTIFACTS_DIR"):
            self.ARTIFACTS_DIR = home / "artifacts"
        if "LOGS_DIR" not in kwargs and not os.environ.get("LOGS_DIR"):
            self.LOGS_DIR = home / "logs"
        
        # Create directories
        for path in (home, self.BUILD_DIR, self.ARTIFACTS_DIR, self.LOGS_DIR):
            path.mkdir(parents=True, exist_ok=True)
        self.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
