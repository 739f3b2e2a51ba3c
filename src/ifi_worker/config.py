"""Runtime configuration for the job worker."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_CODEGEN_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m ifi_worker.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)
CODEGEN_BACKENDS = ("cli", "openrouter")


@dataclass(slots=True)
class WorkerSettings:
    """Dispatcher loop settings."""

    poll_interval_seconds: float = 3.0
    stale_job_seconds: int = 1_800
    heartbeat_key: str = "ifi:worker:heartbeat"
    health_threshold_seconds: float = 15.0


@dataclass(slots=True)
class EventSettings:
    """Progress event channel settings."""

    redis_url: str | None = None
    channel_prefix: str = "job:"


@dataclass(slots=True)
class GitHubSettings:
    """Remote repository mutation settings."""

    token: str | None = None
    api_url: str = "https://api.github.com"
    timeout_seconds: float = 30.0
    max_retries: int = 2
    patch_path: str = ".ifi/autogen.patch"
    draft: bool = True


@dataclass(slots=True)
class CodegenSettings:
    """Code-generation backend settings."""

    backend: str = "cli"
    command_template: str = DEFAULT_CODEGEN_COMMAND_TEMPLATE
    model: str = "openai/gpt-4o-mini"
    timeout_seconds: float = 120.0
    max_tokens: int = 4_096
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".ifi.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    events: EventSettings = field(default_factory=EventSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    codegen: CodegenSettings = field(default_factory=CodegenSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("IFI_DB_PATH", ".ifi.db")),
            sqlite_busy_timeout_ms=int(os.getenv("IFI_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                poll_interval_seconds=_seconds_with_legacy_ms(
                    "IFI_WORKER_POLL_SECONDS",
                    legacy_ms_name="WORKER_POLL_MS",
                    default=3.0,
                ),
                stale_job_seconds=int(os.getenv("IFI_WORKER_STALE_JOB_SECONDS", "1800")),
                heartbeat_key=os.getenv(
                    "IFI_WORKER_HEARTBEAT_KEY",
                    os.getenv("WORKER_HEARTBEAT_KEY", "ifi:worker:heartbeat"),
                ),
                health_threshold_seconds=float(
                    os.getenv("IFI_WORKER_HEALTH_THRESHOLD_SECONDS", "15"),
                ),
            ),
            events=EventSettings(
                redis_url=_env_optional("IFI_REDIS_URL") or _env_optional("REDIS_URL"),
                channel_prefix=os.getenv("IFI_EVENT_CHANNEL_PREFIX", "job:"),
            ),
            github=GitHubSettings(
                token=_env_optional("IFI_GITHUB_TOKEN") or _env_optional("GITHUB_TOKEN"),
                api_url=os.getenv("IFI_GITHUB_API_URL", "https://api.github.com"),
                timeout_seconds=float(os.getenv("IFI_GITHUB_TIMEOUT_SECONDS", "30")),
                max_retries=int(os.getenv("IFI_GITHUB_MAX_RETRIES", "2")),
                patch_path=os.getenv("IFI_PATCH_PATH", ".ifi/autogen.patch"),
                draft=_env_bool("IFI_PR_DRAFT", default=True),
            ),
            codegen=CodegenSettings(
                backend=os.getenv("IFI_CODEGEN_BACKEND", "cli").strip().lower(),
                command_template=os.getenv(
                    "IFI_CODEGEN_COMMAND_TEMPLATE",
                    DEFAULT_CODEGEN_COMMAND_TEMPLATE,
                ),
                model=os.getenv(
                    "IFI_CODEGEN_MODEL",
                    os.getenv("CODEGEN_MODEL", "openai/gpt-4o-mini"),
                ),
                timeout_seconds=_seconds_with_legacy_ms(
                    "IFI_CODEGEN_TIMEOUT_SECONDS",
                    legacy_ms_name="CODEGEN_TIMEOUT_MS",
                    default=120.0,
                ),
                max_tokens=int(
                    os.getenv("IFI_CODEGEN_MAX_TOKENS", os.getenv("CODEGEN_MAX_TOKENS", "4096")),
                ),
                openrouter_api_key=_env_optional("OPENROUTER_API_KEY"),
                openrouter_base_url=os.getenv(
                    "IFI_OPENROUTER_BASE_URL",
                    "https://openrouter.ai/api/v1",
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot run with these settings."""

        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("IFI_WORKER_POLL_SECONDS must be > 0.")
        if self.worker.stale_job_seconds <= 0:
            raise ValueError("IFI_WORKER_STALE_JOB_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("IFI_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if not self.github.token:
            raise ValueError("IFI_GITHUB_TOKEN (or GITHUB_TOKEN) is required to open pull requests.")
        _validate_http_url(self.github.api_url, name="IFI_GITHUB_API_URL")
        if not self.github.patch_path.strip() or self.github.patch_path.startswith("/"):
            raise ValueError("IFI_PATCH_PATH must be a relative repository path.")
        if self.events.redis_url:
            parsed = urlparse(self.events.redis_url)
            if parsed.scheme not in {"redis", "rediss", "unix"}:
                raise ValueError(
                    f"Invalid IFI_REDIS_URL: {self.events.redis_url!r}. "
                    "Expected redis://, rediss:// or unix:// scheme.",
                )
        self.validate_codegen()

    def validate_codegen(self) -> None:
        if self.codegen.backend not in CODEGEN_BACKENDS:
            raise ValueError(
                f"IFI_CODEGEN_BACKEND must be one of {', '.join(CODEGEN_BACKENDS)}; "
                f"got {self.codegen.backend!r}.",
            )
        if self.codegen.timeout_seconds <= 0:
            raise ValueError("IFI_CODEGEN_TIMEOUT_SECONDS must be > 0.")
        if self.codegen.max_tokens <= 0:
            raise ValueError("IFI_CODEGEN_MAX_TOKENS must be > 0.")
        if self.codegen.backend == "openrouter":
            if not self.codegen.openrouter_api_key:
                raise ValueError("OPENROUTER_API_KEY is required for the openrouter backend.")
            _validate_http_url(self.codegen.openrouter_base_url, name="IFI_OPENROUTER_BASE_URL")
        elif not self.codegen.command_template.strip():
            raise ValueError("IFI_CODEGEN_COMMAND_TEMPLATE must not be empty.")


def _seconds_with_legacy_ms(name: str, *, legacy_ms_name: str, default: float) -> float:
    value = os.getenv(name)
    if value is not None:
        return float(value)
    legacy = os.getenv(legacy_ms_name)
    if legacy is not None:
        return float(legacy) / 1000.0
    return default


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
