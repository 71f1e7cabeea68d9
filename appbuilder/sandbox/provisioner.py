import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from appbuilder.config import MAX_ATTEMPT_TIMEOUT_S, Settings
from appbuilder.errors import ProvisionError
from appbuilder.models import SandboxHandle
from appbuilder.sandbox.backend import DegradeProfile, SandboxBackend, SandboxSession
from appbuilder.sandbox.bootstrap import (
    Sleep,
    bootstrap,
    dev_server_command,
    port_check_command,
    wait_for_port,
)


logger = logging.getLogger("appbuilder.sandbox.provisioner")


MAX_ATTEMPTS = 3
MAX_BACKOFF_S = 10.0
# Handles this close to their deadline are treated as expired.
EXPIRY_MARGIN_S = 30.0

SUGGESTIONS: list[str] = [
    "Check the sandbox provider credentials",
    "Verify your internet connection",
    "Try again in a few minutes",
    "Contact support if the issue persists",
]

_IGNORED_DIRS = ("node_modules", ".git", "dist", ".cache")


def degrade_profiles(sandbox_timeout_ms: int, image: str | None = None) -> list[DegradeProfile]:
    return [
        DegradeProfile(level=0, timeout_ms=min(sandbox_timeout_ms, 3 * 60 * 1000), image=image),
        DegradeProfile(level=1, timeout_ms=min(sandbox_timeout_ms, 2 * 60 * 1000)),
        DegradeProfile(
            level=2,
            timeout_ms=min(sandbox_timeout_ms, 90 * 1000),
            vcpus=1,
            memory_mb=512,
        ),
    ]


def attempt_timeout(base_s: float, attempt: int) -> float:
    """Race timeout for a provisioning attempt: base * 1.5^attempt, capped at 10 minutes."""
    return min(base_s * (1.5 ** attempt), MAX_ATTEMPT_TIMEOUT_S)


def backoff_delay(attempt: int) -> float:
    """Delay after a failed attempt: 1s * 2^(attempt-1), capped at 10s."""
    return min(1.0 * (2 ** (attempt - 1)), MAX_BACKOFF_S)


@dataclass
class AttemptRecord:
    attempt: int
    level: int
    timeout_s: float
    error: str | None = None


class SandboxManager:
    """Owns the one live sandbox for an app instance.

    Creation always replaces the previous sandbox wholesale. All mutations go
    through a lock, so concurrent callers see a single writer.
    """

    def __init__(
        self,
        backend: SandboxBackend,
        settings: Settings,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.settings = settings
        self.profiles = degrade_profiles(settings.sandbox_timeout_ms, settings.sandbox_image)
        self.handle: SandboxHandle | None = None
        self.session: SandboxSession | None = None
        self.existing_files: set[str] = set()
        self.scaffold_files: list[str] = []
        self.attempts: list[AttemptRecord] = []
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self.session is not None and self.handle is not None

    def profile_for(self, attempt: int) -> DegradeProfile:
        return self.profiles[min(attempt - 1, len(self.profiles) - 1)]

    async def provision(self) -> SandboxHandle:
        async with self._lock:
            return await self._provision_locked()

    async def _provision_locked(self) -> SandboxHandle:
        self.attempts = []
        last_error: Exception | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            profile = self.profile_for(attempt)
            timeout_s = attempt_timeout(self.settings.provision_base_timeout_s, attempt)
            record = AttemptRecord(attempt=attempt, level=profile.level, timeout_s=timeout_s)
            self.attempts.append(record)
            logger.info(
                "provision attempt %d/%d level=%d timeout=%.0fs",
                attempt,
                MAX_ATTEMPTS,
                profile.level,
                timeout_s,
            )
            try:
                return await self._attempt(attempt, profile, timeout_s)
            except Exception as e:
                last_error = e
                record.error = str(e) or type(e).__name__
                logger.warning("provision attempt %d failed: %s", attempt, record.error)
                if attempt < MAX_ATTEMPTS:
                    delay = backoff_delay(attempt)
                    logger.info("waiting %.1fs before retry", delay)
                    await self._sleep(delay)

        raise ProvisionError(
            f"Failed to create sandbox after {MAX_ATTEMPTS} attempts. "
            f"Last error: {last_error}",
            attempts=MAX_ATTEMPTS,
            suggestions=list(SUGGESTIONS),
            details={"attempts": [r.__dict__ for r in self.attempts]},
        )

    async def _attempt(
        self, attempt: int, profile: DegradeProfile, timeout_s: float
    ) -> SandboxHandle:
        port = self.settings.preview_port
        try:
            session = await asyncio.wait_for(
                self.backend.create(profile, [port]), timeout=timeout_s
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"sandbox creation timed out after {timeout_s:.0f}s") from e
        created = self._clock()

        await self._release_current()
        self.existing_files.clear()

        try:
            scaffold = await bootstrap(session, port, self._sleep)
            base_url = session.url_for(port)
        except BaseException:
            logger.warning("bootstrap failed, tearing down %s", session.sandbox_id)
            try:
                await session.kill()
            except Exception:
                logger.exception("failed to kill partial sandbox %s", session.sandbox_id)
            raise

        lifetime_ms = await self._extend_lifetime(session, profile)
        handle = SandboxHandle(
            sandbox_id=session.sandbox_id,
            base_url=base_url,
            created_at=created,
            deadline=created + lifetime_ms / 1000,
            attempt=attempt,
            degrade_level=profile.level,
        )
        self.session = session
        self.handle = handle
        self.scaffold_files = scaffold
        logger.info("sandbox ready id=%s url=%s", handle.sandbox_id, handle.base_url)
        return handle

    async def _extend_lifetime(self, session: SandboxSession, profile: DegradeProfile) -> int:
        """Grow a degraded sandbox's lifetime back to the configured one.

        Returns the lifetime in effect; a failed extension keeps the profile's.
        """
        extra_ms = self.settings.sandbox_timeout_ms - profile.timeout_ms
        if extra_ms <= 0:
            return profile.timeout_ms
        try:
            await session.extend_lifetime(extra_ms)
        except Exception as e:
            logger.warning(
                "could not extend lifetime of %s by %dms: %s", session.sandbox_id, extra_ms, e
            )
            return profile.timeout_ms
        return self.settings.sandbox_timeout_ms

    def expired(self) -> bool:
        return self.handle is not None and self._clock() >= self.handle.deadline - EXPIRY_MARGIN_S

    async def _release_current(self) -> None:
        session = self.session
        self.session = None
        self.handle = None
        if session is None:
            return
        logger.info("killing previous sandbox %s", session.sandbox_id)
        try:
            await session.kill()
        except Exception as e:
            logger.error("failed to kill previous sandbox %s: %s", session.sandbox_id, e)

    async def require(self) -> tuple[SandboxHandle, SandboxSession]:
        """Return the current sandbox, provisioning one if none is live.

        A sandbox at or near its deadline is replaced wholesale.
        """
        async with self._lock:
            handle, session = self.handle, self.session
            if handle is not None and session is not None and not self.expired():
                return handle, session
            if handle is not None:
                logger.info("sandbox %s reached its deadline, replacing it", handle.sandbox_id)
            handle = await self._provision_locked()
            return handle, self.session

    async def kill(self) -> bool:
        async with self._lock:
            had = self.session is not None
            await self._release_current()
            self.existing_files.clear()
            return had

    async def ensure_preview_server(self) -> bool:
        """Check the preview port and restart the dev server if it is down."""
        async with self._lock:
            if self.session is None:
                return False
            port = self.settings.preview_port
            check = await self.session.run(port_check_command(port))
            if check.ok:
                return True
            logger.info("preview server down on %s, restarting", self.session.sandbox_id)
            await self.session.run(dev_server_command(port))
            return await wait_for_port(self.session, port, self._sleep)

    async def list_files(self) -> list[str]:
        """Snapshot the sandbox file tree, skipping dependency and build dirs."""
        async with self._lock:
            if self.session is None:
                return []
            prune = " -o ".join(f"-path './{d}/*'" for d in _IGNORED_DIRS)
            cmd = (
                f"find . \\( {prune} \\) -prune -o -type f -printf '%P\\n' 2>/dev/null | sort"
            )
            result = await self.session.run(cmd)
            if not result.ok:
                logger.warning("file listing failed: %s", result.stderr)
                return []
            return [line for line in result.stdout.splitlines() if line.strip()]
