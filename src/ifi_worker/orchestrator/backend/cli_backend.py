"""Subprocess-based code-generation backend for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path

from ifi_worker.orchestrator.backend.base import CodegenError

TIMEOUT_EXIT_CODE = 124
_STDERR_PREVIEW_CHARS = 500


class CliCodegenBackend:
    """Run a command template per instruction; the command's stdout is the patch.

    Placeholders: ``{prompt}`` (instruction text), ``{prompt_file}`` (path to a
    file holding the instruction) and ``{model}``. At least one prompt
    placeholder is required.
    """

    def __init__(
        self,
        *,
        command_template: str,
        model: str,
        timeout_seconds: float,
        workdir: Path | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.workdir = workdir

    def generate(self, instruction: str) -> str:
        with tempfile.TemporaryDirectory(prefix="ifi-codegen-") as tmp:
            tmp_dir = Path(tmp)
            prompt_file = tmp_dir / "prompt.txt"
            prompt_file.write_text(instruction, "utf-8")
            run_args = _build_run_args(
                command_template=self.command_template,
                model=self.model,
                prompt=instruction,
                prompt_file=prompt_file,
            )

            env = os.environ.copy()
            env["IFI_CODEGEN_MODEL"] = self.model

            stdout_path = tmp_dir / "stdout.txt"
            stderr_path = tmp_dir / "stderr.txt"
            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code = _run_subprocess(
                        run_args=run_args,
                        env=env,
                        cwd=self.workdir,
                        timeout_seconds=self.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                    )
            except FileNotFoundError as error:
                raise CodegenError(
                    f"Codegen command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise CodegenError(f"Codegen command failed to start: {error}", transient=True) from error

            stdout = stdout_path.read_text("utf-8", errors="replace")
            stderr = stderr_path.read_text("utf-8", errors="replace")

        if exit_code == TIMEOUT_EXIT_CODE:
            raise CodegenError(
                f"Codegen command timed out after {self.timeout_seconds:g}s",
                transient=True,
            )
        if exit_code != 0:
            detail = stderr.strip()[:_STDERR_PREVIEW_CHARS] or "no stderr output"
            raise CodegenError(
                f"Codegen command exited with code {exit_code}: {detail}",
                transient=False,
            )
        if not stdout.strip():
            raise CodegenError("Codegen command produced no output", transient=False)
        return stdout


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise CodegenError("Codegen command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise CodegenError(
            "Codegen command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise CodegenError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CodegenError("Codegen command template rendered empty command.", transient=False)
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: float,
    stdout_handle,
    stderr_handle,
) -> int:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE
        time.sleep(0.05)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
