import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FileType(str, Enum):
    SCRIPT = "script"
    STYLE = "style"
    DATA = "data"
    MARKUP = "markup"
    TEXT = "text"


_EXTENSION_TYPES: dict[str, FileType] = {
    "js": FileType.SCRIPT,
    "jsx": FileType.SCRIPT,
    "ts": FileType.SCRIPT,
    "tsx": FileType.SCRIPT,
    "mjs": FileType.SCRIPT,
    "cjs": FileType.SCRIPT,
    "css": FileType.STYLE,
    "scss": FileType.STYLE,
    "sass": FileType.STYLE,
    "less": FileType.STYLE,
    "json": FileType.DATA,
    "yaml": FileType.DATA,
    "yml": FileType.DATA,
    "toml": FileType.DATA,
    "html": FileType.MARKUP,
    "htm": FileType.MARKUP,
    "svg": FileType.MARKUP,
    "xml": FileType.MARKUP,
    "md": FileType.MARKUP,
}


def file_type_for(path: str) -> FileType:
    """Derive a file type from the path extension only."""
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return FileType.TEXT
    ext = name.rsplit(".", 1)[-1].lower()
    return _EXTENSION_TYPES.get(ext, FileType.TEXT)


class SessionStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    APPLYING = "applying"
    COMPLETE = "complete"
    FAILED = "failed"


class FileRecord(BaseModel):
    path: str
    content: str = ""
    type: FileType = FileType.TEXT
    completed: bool = False
    edited: bool = False
    last_updated_at: float = Field(default_factory=time.time)


class TokenUsage(BaseModel):
    prompt_tokens: int
    completion_tokens: int

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class SandboxHandle(BaseModel):
    """A provisioned sandbox as seen by the rest of the pipeline.

    Attributes:
        sandbox_id: Provider id of the sandbox.
        base_url: Public URL of the preview server.
        created_at: Epoch seconds at creation.
        deadline: Epoch seconds after which the provider reclaims it.
        attempt: Provisioning attempt (1-based) that produced it.
        degrade_level: Index of the fallback profile used.
    """

    sandbox_id: str
    base_url: str
    created_at: float
    deadline: float
    attempt: int
    degrade_level: int


class PackageFailure(BaseModel):
    name: str
    message: str


class ApplicationResult(BaseModel):
    success: bool = True
    files_created: list[str] = Field(default_factory=list)
    files_updated: list[str] = Field(default_factory=list)
    packages_installed: list[str] = Field(default_factory=list)
    packages_failed: list[PackageFailure] = Field(default_factory=list)
    commands_executed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def files_applied(self) -> list[str]:
        return self.files_created + self.files_updated


class CreditLedgerEntry(BaseModel):
    user_id: str
    session_id: str
    operation: str
    estimated_tokens: int
    actual_tokens: int | None = None
    balance_before: int
    balance_after: int
    timestamp: float = Field(default_factory=time.time)

    @property
    def deducted(self) -> int:
        return self.balance_before - self.balance_after


class MirrorTarget(BaseModel):
    repo_name: str
    repo_url: str
    created_at: float = Field(default_factory=time.time)


class StreamEvent(BaseModel):
    """One decoded frame of the generation event stream."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
