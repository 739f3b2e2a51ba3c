"""Local deterministic agent for CLI backend integration tests and smoke runs."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

DEFAULT_TARGET = "IFI_CHANGES.md"


def render_patch(instruction: str, *, target: str = DEFAULT_TARGET, model: str = "echo") -> str:
    """Unified diff that adds ``target`` containing the instruction text."""

    body = [
        "# Generated changes",
        "",
        f"Model: {model}",
        "",
        *instruction.strip().splitlines(),
    ]
    lines = [
        "--- /dev/null",
        f"+++ b/{target}",
        f"@@ -0,0 +1,{len(body)} @@",
        *(f"+{line}" for line in body),
    ]
    return "\n".join(lines) + "\n"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--target", default=DEFAULT_TARGET)
    parser.add_argument("--fail", action="store_true")
    args = parser.parse_args(argv)

    if args.fail:
        print("echo agent: forced failure", file=sys.stderr)
        return 2

    instruction = Path(args.prompt_file).read_text("utf-8")
    model = os.getenv("IFI_CODEGEN_MODEL", "echo")
    sys.stdout.write(render_patch(instruction, target=args.target, model=model))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
