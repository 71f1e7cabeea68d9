import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator


current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
# Load env from the repo root first, then the package dir, without overriding the process env
load_dotenv(os.path.join(root_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


# Fixed UI-facing constants, not read from the environment
REFRESH_DEBOUNCE_MS = 3000
PORT_POLL_ATTEMPTS = 10
PORT_POLL_INTERVAL_SECONDS = 2.0

# Provisioning races attempt n against base * 1.5^n, capped at 10 minutes.
# Bases above 600 / 1.5^2 would make the last two attempts share the cap.
MAX_ATTEMPT_TIMEOUT_S = 10 * 60
MAX_PROVISION_BASE_TIMEOUT_S = 240.0


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration for the builder service.

    Attributes:
        model_base_url: OpenAI-compatible gateway used for generation.
        model_api_key: Key for the gateway (None disables live generation).
        default_model: Model used when a request does not name one.
        sandbox_image: Image for the first provisioning attempt (None for the provider default).
        sandbox_timeout_ms: Upper bound for a sandbox's lifetime.
        provision_base_timeout_s: Base race timeout for one provisioning attempt,
            clamped to MAX_PROVISION_BASE_TIMEOUT_S.
        preview_port: Port the preview dev server listens on inside the sandbox.
        refresh_delay_ms: Delay before a preview refresh after an apply.
        package_refresh_delay_ms: Same, when packages were installed.
        refresh_grace_ms: Wait before a reloaded preview is considered stuck.
        mirror_settle_ms: Delay before a queued mirror commit runs.
        build_check: Run a `vite build` after writing files.
        github_token: Token for the mirror integration (None disables it).
        default_credits: Balance granted to unknown users.
    """

    model_config = ConfigDict(protected_namespaces=())

    model_base_url: str = "https://ai-gateway.vercel.sh/v1"
    model_api_key: str | None = None
    default_model: str = "openai/gpt-4.1"
    sandbox_image: str | None = None
    sandbox_timeout_ms: int = 15 * 60 * 1000
    provision_base_timeout_s: float = Field(default=180.0, gt=0)
    preview_port: int = 5173
    refresh_delay_ms: int = 2000
    package_refresh_delay_ms: int = 5000
    refresh_grace_ms: int = 2000
    mirror_settle_ms: int = 2000
    build_check: bool = False
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    default_credits: int = 0
    allowed_models: list[str] = Field(
        default_factory=lambda: [
            "openai/gpt-4.1",
            "openai/gpt-4.1-mini",
            "openai/gpt-5",
            "openai/gpt-5-mini",
        ]
    )

    @field_validator("provision_base_timeout_s")
    @classmethod
    def _clamp_provision_timeout(cls, value: float) -> float:
        return min(value, MAX_PROVISION_BASE_TIMEOUT_S)

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        values: dict[str, Any] = {
            "model_base_url": os.getenv("AI_GATEWAY_BASE_URL")
            or os.getenv("OPENAI_BASE_URL")
            or "https://ai-gateway.vercel.sh/v1",
            "model_api_key": os.getenv("AI_GATEWAY_API_KEY")
            or os.getenv("VERCEL_OIDC_TOKEN")
            or os.getenv("OPENAI_API_KEY"),
            "default_model": os.getenv("DEFAULT_MODEL") or "openai/gpt-4.1",
            "sandbox_image": os.getenv("SANDBOX_IMAGE") or None,
            "sandbox_timeout_ms": _env_int("SANDBOX_TIMEOUT_MS", 15 * 60 * 1000),
            "provision_base_timeout_s": float(
                _env_int("PROVISION_BASE_TIMEOUT_SECONDS", 180)
            ),
            "preview_port": _env_int("SANDBOX_APP_PORT", 5173),
            "refresh_delay_ms": _env_int("REFRESH_DELAY_MS", 2000),
            "package_refresh_delay_ms": _env_int("PACKAGE_REFRESH_DELAY_MS", 5000),
            "mirror_settle_ms": _env_int("MIRROR_SETTLE_MS", 2000),
            "build_check": _env_bool("BUILD_CHECK", False),
            "github_token": os.getenv("GITHUB_TOKEN") or None,
            "github_api_url": os.getenv("GITHUB_API_URL") or "https://api.github.com",
            "default_credits": _env_int("DEFAULT_CREDITS", 0),
        }
        values.update(overrides)
        return cls(**values)
