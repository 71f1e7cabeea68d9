"""Shared fakes for sandbox, mirror and model-stream collaborators."""

from types import SimpleNamespace

import pytest

from appbuilder.config import Settings
from appbuilder.models import FileRecord, file_type_for
from appbuilder.sandbox.backend import CommandResult


class FakeSession:
    """In-memory sandbox session.

    Commands succeed unless a registered rule matches; `cat package.json`
    returns the written package.json.
    """

    def __init__(self, sandbox_id: str = "sbx-1"):
        self.sandbox_id = sandbox_id
        self.commands: list[str] = []
        self.files: dict[str, str] = {}
        self.writes: list[list[str]] = []
        self.rules: list[tuple[str, CommandResult]] = []
        self.write_failures = 0
        self.extensions: list[int] = []
        self.extend_error: Exception | None = None
        self.killed = False

    def on(self, needle: str, result: CommandResult) -> None:
        self.rules.insert(0, (needle, result))

    async def run(self, script, on_output=None):
        self.commands.append(script)
        if script == "cat package.json":
            content = self.files.get("package.json")
            if content is None:
                return CommandResult(stderr="No such file", exit_code=1)
            return CommandResult(stdout=content)
        for needle, result in self.rules:
            if needle in script:
                if on_output is not None:
                    for line in (result.stdout + result.stderr).splitlines():
                        on_output(line)
                return result
        return CommandResult()

    async def write_files(self, files):
        if self.write_failures:
            self.write_failures -= 1
            raise RuntimeError("sandbox write failed")
        self.writes.append([path for path, _ in files])
        self.files.update(dict(files))

    def url_for(self, port):
        return f"https://{self.sandbox_id}-{port}.sandbox.test"

    async def extend_lifetime(self, extra_ms):
        if self.extend_error is not None:
            raise self.extend_error
        self.extensions.append(extra_ms)

    async def kill(self):
        self.killed = True


class FakeBackend:
    """Creates FakeSessions; `fail_first` creations raise."""

    def __init__(self, fail_first: int = 0):
        self.fail_first = fail_first
        self.profiles = []
        self.sessions: list[FakeSession] = []

    async def create(self, profile, ports):
        self.profiles.append(profile)
        if len(self.profiles) <= self.fail_first:
            raise RuntimeError(f"provider unavailable (attempt {len(self.profiles)})")
        session = FakeSession(f"sbx-{len(self.profiles)}")
        self.sessions.append(session)
        return session


class FakeMirrorClient:
    def __init__(self):
        self.repos: list[tuple[str, str]] = []
        self.commits: list[tuple[str, dict, str]] = []

    async def create_repo(self, name, description):
        self.repos.append((name, description))
        return f"https://github.com/tester/{name}"

    async def commit_files(self, repo, files, message):
        self.commits.append((repo, dict(files), message))
        return True


class FakeFrame:
    def __init__(self, loaded: bool = False):
        self.loaded = loaded
        self.navigations: list[str] = []
        self.recreations: list[str] = []

    async def is_loaded(self):
        return self.loaded

    async def navigate(self, url):
        self.navigations.append(url)

    async def recreate(self, url):
        self.recreations.append(url)


async def no_sleep(seconds):
    return None


def frame_bytes(*frames: str) -> list[bytes]:
    return [f.encode("utf-8") for f in frames]


def make_file(path: str, content: str) -> FileRecord:
    return FileRecord(path=path, content=content, type=file_type_for(path), completed=True)


@pytest.fixture
def settings():
    return Settings(
        sandbox_timeout_ms=15 * 60 * 1000,
        provision_base_timeout_s=30.0,
        refresh_delay_ms=0,
        package_refresh_delay_ms=0,
        refresh_grace_ms=0,
        mirror_settle_ms=0,
        default_credits=0,
    )


@pytest.fixture
def backend():
    return FakeBackend()


class _Stream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self._chunks:
            yield chunk


class FakeCompletions:
    def __init__(self, deltas, usage=None, reasoning=(), error=None):
        self.deltas = deltas
        self.usage = usage
        self.reasoning = reasoning
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        chunks = [
            SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content=None, reasoning_content=r))],
                usage=None,
            )
            for r in self.reasoning
        ]
        chunks += [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=d))], usage=None)
            for d in self.deltas
        ]
        if self.usage is not None:
            chunks.append(
                SimpleNamespace(
                    choices=[],
                    usage=SimpleNamespace(prompt_tokens=self.usage[0], completion_tokens=self.usage[1]),
                )
            )
        return _Stream(chunks)


def fake_openai(deltas, usage=None, reasoning=(), error=None):
    completions = FakeCompletions(deltas, usage, reasoning, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))
