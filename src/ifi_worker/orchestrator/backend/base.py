"""Code-generation backend interface."""

from __future__ import annotations

from typing import Protocol


class CodegenError(RuntimeError):
    """Code generation failed; ``transient`` hints whether a later run may succeed."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CodegenBackend(Protocol):
    """Black-box text generation: instruction in, patch text out."""

    def generate(self, instruction: str) -> str:
        """Return generated patch text or raise ``CodegenError``."""
