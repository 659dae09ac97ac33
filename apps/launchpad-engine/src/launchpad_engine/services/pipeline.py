"""iOS build pipeline executor."""

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from launchpad_engine.core.config import Settings, settings
from launchpad_engine.services.app_config import AppConfigService
from launchpad_engine.services.build_log import BuildLogger
from launchpad_engine.services.keychain import EphemeralSigningContext, KeychainSearchList, SigningCredentials
from launchpad_engine.services.process import ProcessExecutor
from launchpad_engine.services.stages import (
    STAGE_TITLES,
    JobParams,
    Stage,
    StageContext,
    cleanup,
    compile_ipa,
    install_dependencies,
    install_native_dependencies,
    prebuild,
    prepare_workspace,
)
from launchpad_engine.services.upload import Uploader, upload_to_app_store

logger = logging.getLogger(__name__)

StageCallback = Callable[[Stage], Awaitable[None]]


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""
    success: bool
    artifact_path: Optional[str] = None
    error: Optional[str] = None
    workspace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "artifactPath": self.artifact_path,
            "error": self.error,
            "workspace": self.workspace,
        }


class PipelineExecutor:
    """Runs the build stages for one job at a time.

    One instance can be shared by all workers; per-job state lives in the
    ``run_pipeline`` call. The keychain search list is shared on purpose so
    its read-modify-write is serialized across the pool.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        executor: Optional[ProcessExecutor] = None,
        search_list: Optional[KeychainSearchList] = None,
        uploader: Optional[Uploader] = None,
        keychain_dir: Optional[Path] = None,
    ):
        self.config = config or settings
        self.executor = executor or ProcessExecutor()
        self.search_list = search_list or KeychainSearchList(self.executor)
        self.uploader = uploader
        self.keychain_dir = keychain_dir
        self.app_config = AppConfigService(self.executor)

    def create_logger(self, job_id: str) -> BuildLogger:
        return BuildLogger(
            job_id,
            logs_dir=self.config.LOGS_DIR,
            flush_interval=self.config.LOG_FLUSH_INTERVAL,
            echo=self.config.LOG_ECHO,
        )

    async def run_pipeline(
        self,
        job_id: str,
        project_path: str,
        profile: str,
        version: str,
        build_number: str,
        message: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> PipelineResult:
        """Run every stage for one job. Never raises.

        On the first failing stage the remaining stages are skipped and the
        workspace is kept (subject to the retention policy).
        """
        params = JobParams(
            job_id=job_id,
            project_path=project_path,
            profile=profile,
            version=version,
            build_number=build_number,
            message=message,
        )
        build_logger = self.create_logger(job_id)
        ctx: Optional[StageContext] = None
        try:
            await build_logger.init()
        except OSError as e:
            logger.exception("Job %s: could not create build log: %s", job_id, e)
            return PipelineResult(success=False, error=f"Could not create build log: {e}")

        try:
            build_logger.log(f"Starting iOS build pipeline for job: {job_id}")
            build_logger.log(f"Project: {project_path}")
            build_logger.log(f"Profile: {profile}")
            build_logger.log(f"Version: {version} ({build_number})")
            if message:
                build_logger.log(f"Message: {message}")

            bundle_identifier = await self.app_config.get_bundle_identifier(Path(project_path), build_logger)
            build_logger.log(f"Bundle ID: {bundle_identifier}")

            ctx = StageContext(
                params=params,
                workspace=Path(self.config.BUILD_DIR) / job_id,
                build_logger=build_logger,
                executor=self.executor,
                config=self.config,
            )

            async with AsyncExitStack() as signing_scope:
                await self._enter(Stage.PREPARE, ctx, on_stage)
                await prepare_workspace(ctx)

                await self._enter(Stage.INSTALL_DEPS, ctx, on_stage)
                await install_dependencies(ctx)

                await self._enter(Stage.PREBUILD, ctx, on_stage)
                await prebuild(ctx)

                await self._enter(Stage.INSTALL_NATIVE_DEPS, ctx, on_stage)
                await install_native_dependencies(ctx)

                await self._enter(Stage.SIGN, ctx, on_stage)
                # The keychain must outlive this stage: compile signs with it
                await signing_scope.enter_async_context(
                    EphemeralSigningContext(
                        workspace=ctx.workspace,
                        bundle_identifier=bundle_identifier,
                        credentials=SigningCredentials.from_settings(self.config),
                        build_logger=build_logger,
                        executor=self.executor,
                        search_list=self.search_list,
                        keychain_dir=self.keychain_dir,
                        lock_timeout=self.config.KEYCHAIN_LOCK_TIMEOUT,
                    )
                )

                await self._enter(Stage.COMPILE, ctx, on_stage)
                build_result = await compile_ipa(ctx)

                await self._enter(Stage.UPLOAD, ctx, on_stage)
                await upload_to_app_store(ctx, build_result.ipa_path, self.uploader)

            await self._enter(Stage.CLEANUP, ctx, on_stage)
            cleanup(ctx, success=True)

            build_logger.log("\n🎉 Pipeline completed successfully!")
            return PipelineResult(
                success=True,
                artifact_path=str(build_result.ipa_path),
                workspace=str(ctx.workspace),
            )

        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error("Job %s failed: %s", job_id, error)
            build_logger.error(error)
            build_logger.log(f"\n❌ Pipeline failed: {error}")

            if ctx is not None and ctx.workspace_created:
                build_logger.step(STAGE_TITLES[Stage.CLEANUP])
                try:
                    cleanup(ctx, success=False)
                except Exception as cleanup_error:
                    logger.exception("Job %s: cleanup after failure errored: %s", job_id, cleanup_error)

            return PipelineResult(
                success=False,
                error=error,
                workspace=str(ctx.workspace) if ctx is not None and ctx.workspace_created else None,
            )

        finally:
            await build_logger.close()

    async def _enter(self, stage: Stage, ctx: StageContext, on_stage: Optional[StageCallback]) -> None:
        if on_stage is not None:
            await on_stage(stage)
        ctx.build_logger.step(STAGE_TITLES[stage])
