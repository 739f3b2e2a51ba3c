"""Backend selection from runtime settings."""

from __future__ import annotations

from ifi_worker.config import CodegenSettings
from ifi_worker.orchestrator.backend.base import CodegenBackend
from ifi_worker.orchestrator.backend.cli_backend import CliCodegenBackend
from ifi_worker.orchestrator.backend.http_backend import OpenRouterCodegenBackend


def build_codegen_backend(settings: CodegenSettings) -> CodegenBackend:
    if settings.backend == "openrouter":
        if not settings.openrouter_api_key:
            raise ValueError("OPENROUTER_API_KEY is required for the openrouter backend.")
        return OpenRouterCodegenBackend(
            api_key=settings.openrouter_api_key,
            model=settings.model,
            max_tokens=settings.max_tokens,
            timeout_seconds=settings.timeout_seconds,
            base_url=settings.openrouter_base_url,
        )
    if settings.backend == "cli":
        return CliCodegenBackend(
            command_template=settings.command_template,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
        )
    raise ValueError(f"Unsupported codegen backend: {settings.backend!r}")
