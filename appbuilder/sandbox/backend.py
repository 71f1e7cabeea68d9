from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from vercel.sandbox import Sandbox, SandboxResources, create_sandbox


logger = logging.getLogger("appbuilder.sandbox.backend")


OutputCallback = Callable[[str], None]


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class DegradeProfile:
    """Resource configuration for one provisioning attempt.

    Later profiles ask for less: a shorter initial lifetime, fewer vCPUs, less
    memory and the provider's default image instead of a configured one.
    """

    level: int
    timeout_ms: int
    image: str | None = None
    vcpus: int | None = None
    memory_mb: int | None = None

    @property
    def resources(self) -> SandboxResources | None:
        if self.vcpus is None and self.memory_mb is None:
            return None
        return SandboxResources(vcpus=self.vcpus, memory=self.memory_mb)


class SandboxSession(Protocol):
    """A live sandbox as exposed by a provider."""

    sandbox_id: str

    async def run(
        self, script: str, on_output: OutputCallback | None = None
    ) -> CommandResult: ...

    async def write_files(self, files: list[tuple[str, str]]) -> None: ...

    def url_for(self, port: int) -> str: ...

    async def extend_lifetime(self, extra_ms: int) -> None: ...

    async def kill(self) -> None: ...


class SandboxBackend(Protocol):
    async def create(self, profile: DegradeProfile, ports: list[int]) -> SandboxSession: ...


class VercelSandboxSession:
    """`SandboxSession` on top of a Vercel `Sandbox`."""

    def __init__(self, sandbox: Sandbox):
        self._sandbox = sandbox
        self.sandbox_id: str = sandbox.name

    async def run(
        self, script: str, on_output: OutputCallback | None = None
    ) -> CommandResult:
        cwd = self._sandbox.cwd
        if on_output is None:
            done = await self._sandbox.run_process(
                "bash", ["-lc", script], cwd=cwd, capture_output=True
            )
            return CommandResult(
                stdout=done.stdout or "", stderr=done.stderr or "", exit_code=done.returncode
            )

        proc = await self._sandbox.create_process(
            "bash", ["-lc", script], cwd=cwd, stderr=subprocess.STDOUT
        )
        lines: list[str] = []
        if proc.stdout is not None:
            async for line in proc.stdout:
                lines.append(line)
                on_output(line.rstrip("\n"))
        exit_code = await proc.wait()
        return CommandResult(stdout="".join(lines), exit_code=exit_code)

    async def write_files(self, files: list[tuple[str, str]]) -> None:
        if not files:
            return
        async with self._sandbox.fs.batch() as batch:
            for path, content in files:
                batch.write_text(path.removeprefix("./"), content)

    def url_for(self, port: int) -> str:
        for route in self._sandbox.routes:
            if route.port == port:
                return route.url
        raise KeyError(f"port {port} is not exposed by sandbox {self.sandbox_id}")

    async def extend_lifetime(self, extra_ms: int) -> None:
        await self._sandbox.extend_execution_time_limit(timedelta(milliseconds=extra_ms))

    async def kill(self) -> None:
        await self._sandbox.stop()


class VercelSandboxBackend:
    """Creates Vercel sandboxes from a degrade profile."""

    async def create(self, profile: DegradeProfile, ports: list[int]) -> VercelSandboxSession:
        sandbox = await create_sandbox(
            image=profile.image,
            ports=ports,
            execution_time_limit=timedelta(milliseconds=profile.timeout_ms),
            resources=profile.resources,
        )
        logger.info(
            "created sandbox %s (level=%d vcpus=%s memory=%s)",
            sandbox.name,
            profile.level,
            sandbox.vcpus,
            sandbox.memory,
        )
        return VercelSandboxSession(sandbox)
