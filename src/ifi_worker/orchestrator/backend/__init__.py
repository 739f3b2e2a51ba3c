"""Code-generation backend implementations."""

from ifi_worker.orchestrator.backend.base import CodegenBackend, CodegenError
from ifi_worker.orchestrator.backend.cli_backend import CliCodegenBackend
from ifi_worker.orchestrator.backend.factory import build_codegen_backend
from ifi_worker.orchestrator.backend.http_backend import OpenRouterCodegenBackend

__all__ = [
    "CliCodegenBackend",
    "CodegenBackend",
    "CodegenError",
    "OpenRouterCodegenBackend",
    "build_codegen_backend",
]
