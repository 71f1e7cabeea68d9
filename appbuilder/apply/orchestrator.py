import asyncio
import json
import logging
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from appbuilder.apply.packages import detect_packages, install_packages, installed_packages
from appbuilder.apply.preview import PreviewFrame, PreviewRefresher
from appbuilder.config import Settings
from appbuilder.errors import ApplicationError
from appbuilder.mirror import MirrorService, commit_message_for
from appbuilder.models import ApplicationResult, FileRecord, PackageFailure
from appbuilder.sandbox.backend import SandboxSession
from appbuilder.sandbox.provisioner import SandboxManager


logger = logging.getLogger("appbuilder.apply.orchestrator")


Progress = Callable[[str, dict[str, Any]], None]

WRITE_CHUNK_SIZE = 64
WRITE_RETRIES = 3


def _noop(event_type: str, data: dict[str, Any]) -> None:
    pass


class ApplicationOrchestrator:
    """Pushes a generation's files to the sandbox and reports the outcome.

    Package installs are best-effort. A failed write aborts the remaining
    steps. Preview refresh and mirror commits run in the background after the
    result has been returned.
    """

    def __init__(
        self,
        manager: SandboxManager,
        settings: Settings,
        mirror: MirrorService | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.manager = manager
        self.settings = settings
        self.mirror = mirror or MirrorService(None)
        self.refresher: PreviewRefresher | None = None
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    async def apply(
        self,
        files: list[FileRecord],
        is_edit: bool,
        *,
        project_id: str = "default",
        prompt: str = "",
        queued_packages: Iterable[str] = (),
        frame: PreviewFrame | None = None,
        on_progress: Progress | None = None,
    ) -> ApplicationResult:
        progress = on_progress or _noop
        result = ApplicationResult()
        handle, session = await self.manager.require()

        # (a) packages referenced by the code or queued by the model
        requested = detect_packages(files, queued_packages)
        missing: list[str] = []
        if requested:
            present = await installed_packages(session)
            missing = [p for p in requested if p not in present]
        progress("packages_detected", {"requested": requested, "missing": missing})

        # (b) one batched install, best-effort
        if missing:
            await self._install(session, missing, result, progress)

        if self.mirror.enabled and not is_edit and self.mirror.target_for(project_id) is None:
            try:
                target = await self.mirror.ensure_repository(project_id, prompt)
                if target is not None:
                    progress("mirror_created", {"repo_url": target.repo_url})
            except Exception as e:
                logger.error("mirror repository creation failed: %s", e)
                progress("mirror_failed", {"error": str(e)})

        # (c) write files; any failure here ends the apply
        try:
            await self._write_files(session, files, result, progress)
        except Exception as e:
            err = ApplicationError(f"Failed to write files to the sandbox: {e}")
            logger.error("apply aborted after %d files: %s", len(result.files_applied), e)
            result.success = False
            result.errors.append(err.message)
            progress("apply_failed", {"error": err.message})
            return result

        # (d) lightweight checks
        problems = self._check_data_files(files)
        if self.settings.build_check:
            problems.extend(await self._build_check(session, result))
        if problems:
            err = ApplicationError("Build check failed: " + "; ".join(problems))
            result.success = False
            result.errors.append(err.message)
            progress("build_check_failed", {"problems": problems})

        # (e) debounced refresh, then the mirror commit after the settle delay
        if frame is not None and result.files_applied:
            delay = (
                self.settings.package_refresh_delay_ms
                if result.packages_installed
                else self.settings.refresh_delay_ms
            )
            self._spawn(self._delayed_refresh(frame, handle.base_url, delay))

        target = self.mirror.target_for(project_id)
        if target is not None and result.files_applied:
            message = commit_message_for(prompt, result.files_applied, is_edit)
            contents = {f.path: f.content for f in files if f.path in result.files_applied}
            self._spawn(self._delayed_commit(project_id, contents, message))
            progress("mirror_commit_queued", {"repo": target.repo_name, "message": message})

        progress(
            "apply_complete",
            {
                "files_created": len(result.files_created),
                "files_updated": len(result.files_updated),
                "success": result.success,
            },
        )
        return result

    async def _install(
        self,
        session: SandboxSession,
        missing: list[str],
        result: ApplicationResult,
        progress: Progress,
    ) -> None:
        progress("packages_installing", {"packages": missing})
        try:
            installed, failed, commands = await install_packages(
                session, missing, lambda line: progress("install_output", {"line": line})
            )
        except Exception as e:
            logger.error("package install crashed: %s", e)
            installed, commands = [], []
            failed = [PackageFailure(name=p, message=str(e)) for p in missing]
        result.packages_installed.extend(installed)
        result.packages_failed.extend(failed)
        result.commands_executed.extend(commands)
        for f in failed:
            logger.warning("package %s failed to install: %s", f.name, f.message)
        progress(
            "packages_installed",
            {"installed": installed, "failed": [f.model_dump() for f in failed]},
        )

    async def _write_files(
        self,
        session: SandboxSession,
        files: list[FileRecord],
        result: ApplicationResult,
        progress: Progress,
    ) -> None:
        existing = self.manager.existing_files
        for i in range(0, len(files), WRITE_CHUNK_SIZE):
            chunk = files[i : i + WRITE_CHUNK_SIZE]
            attempt = 0
            while True:
                try:
                    await session.write_files([(f.path, f.content) for f in chunk])
                    break
                except Exception as e:
                    attempt += 1
                    if attempt >= WRITE_RETRIES:
                        raise
                    progress(
                        "write_retry",
                        {"attempt": attempt, "error": str(e)},
                    )
                    await self._sleep(0.25 * (2 ** (attempt - 1)))
            for f in chunk:
                if f.path in existing:
                    result.files_updated.append(f.path)
                else:
                    result.files_created.append(f.path)
                    existing.add(f.path)
                progress("file_written", {"path": f.path})

    def _check_data_files(self, files: list[FileRecord]) -> list[str]:
        problems: list[str] = []
        for f in files:
            if f.path.endswith(".json"):
                try:
                    json.loads(f.content or "null")
                except json.JSONDecodeError as e:
                    problems.append(f"{f.path}: invalid JSON ({e.msg} at line {e.lineno})")
        return problems

    async def _build_check(self, session: SandboxSession, result: ApplicationResult) -> list[str]:
        cmd = "npx --no-install vite build --logLevel error --outDir /tmp/build-check"
        result.commands_executed.append(cmd)
        check = await session.run(cmd)
        if check.ok:
            return []
        return [(check.stderr or check.stdout).strip()[-500:] or f"vite build exited {check.exit_code}"]

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for scheduled refreshes and commits."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _delayed_refresh(self, frame: PreviewFrame, base_url: str, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        if self.refresher is None or self.refresher.base_url != base_url:
            self.refresher = PreviewRefresher(
                frame, base_url, grace_ms=self.settings.refresh_grace_ms, sleep=self._sleep
            )
        else:
            self.refresher.frame = frame
        try:
            outcome = await self.refresher.refresh()
            logger.info("preview refresh: %s", outcome)
        except Exception:
            logger.exception("preview refresh failed")

    async def _delayed_commit(self, project_id: str, files: dict[str, str], message: str) -> None:
        await self._sleep(self.settings.mirror_settle_ms / 1000)
        try:
            await self.mirror.commit(project_id, files, message)
        except Exception:
            logger.exception("mirror commit failed for project %s", project_id)
