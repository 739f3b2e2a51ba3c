"""Specification resolution, instruction compiling and deterministic naming.

Everything here except :func:`resolve_spec` is pure: identical inputs always
render identical instructions, branch names and pull request text, which is
what makes re-processing a job after a crash target the same branch.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Protocol

from ifi_worker.orchestrator.models import (
    CodeDeliverable,
    Deliverable,
    FileTarget,
    JobView,
    SpecContent,
    SpecPayloadError,
    SpecView,
    TestDeliverable,
    TestPlan,
)

FALLBACK_FEATURE_NAME = "autogen"
FEATURE_NAME_MAX_CHARS = 40
JOB_ID_PREFIX_CHARS = 8
PR_TITLE_MAX_CHARS = 72
GENERIC_PR_TITLE = "Automated change"
PLACEHOLDER_MARKER = "IFI-PLACEHOLDER-PATCH"

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


class SpecSource(Protocol):
    def get_spec_by_id(self, spec_id: str) -> SpecView | None: ...


def resolve_spec(datastore: SpecSource, job: JobView) -> SpecView | None:
    """Load the job's specification; ``None`` means use the generic instruction."""

    if not job.spec_id:
        return None
    return datastore.get_spec_by_id(job.spec_id)


def fallback_instruction(job: JobView) -> str:
    return f"Create a simple change for repository {job.repo}"


def compile_instruction(spec: SpecView) -> str:
    """Render a specification into a single code-generation instruction."""

    content = spec.content
    sections = [
        f"Goal: {content.goal.strip()}",
        _labelled_list("Deliverables", [_render_deliverable(item) for item in content.deliverables]),
        _labelled_list("Constraints", list(content.constraints)),
        _labelled_list("Acceptance criteria", list(content.acceptance_criteria)),
        _labelled_list(
            "File targets",
            [f"{target.path}: {target.reason}" for target in content.file_targets],
        ),
    ]
    return "\n\n".join(sections)


def feature_name(spec: SpecView | None) -> str:
    if spec is None:
        return FALLBACK_FEATURE_NAME
    slug = slugify(spec.title or "") or slugify(spec.goal)
    return slug or FALLBACK_FEATURE_NAME


def derive_feature_branch(job: JobView, spec: SpecView | None) -> str:
    """Return the recorded feature branch, or derive one from job id and spec."""

    if job.feature_branch:
        return job.feature_branch
    return f"feat/{feature_name(spec)}-{job.job_id[:JOB_ID_PREFIX_CHARS]}"


def slugify(value: str, *, max_chars: int = FEATURE_NAME_MAX_CHARS) -> str:
    slug = _SLUG_INVALID.sub("-", value.lower()).strip("-")
    if len(slug) > max_chars:
        slug = slug[:max_chars].rstrip("-")
    return slug


def commit_message(job: JobView, spec: SpecView | None) -> str:
    return (
        f"feat({feature_name(spec)}): apply generated changes "
        f"for job {job.job_id[:JOB_ID_PREFIX_CHARS]}"
    )


def pull_request_title(spec: SpecView | None) -> str:
    if spec is None:
        return GENERIC_PR_TITLE
    lines = [line.strip() for line in spec.goal.strip().splitlines() if line.strip()]
    if not lines:
        return GENERIC_PR_TITLE
    title = lines[0]
    if len(title) > PR_TITLE_MAX_CHARS:
        title = title[: PR_TITLE_MAX_CHARS - 3].rstrip() + "..."
    return title


def pull_request_body(spec: SpecView | None, job: JobView) -> str:
    parts: list[str] = []
    if spec is None:
        parts.append(fallback_instruction(job) + ".")
    else:
        content = spec.content
        parts.append(f"## Goal\n\n{content.goal.strip()}")
        if content.acceptance_criteria:
            checkboxes = "\n".join(f"- [ ] {item}" for item in content.acceptance_criteria)
            parts.append(f"## Acceptance criteria\n\n{checkboxes}")
        if content.risk_notes:
            risks = "\n".join(f"- {item}" for item in content.risk_notes)
            parts.append(f"## Risk notes\n\n{risks}")
        if content.test_plan is not None:
            plan_lines = [f"Strategy: {content.test_plan.strategy}"]
            if content.test_plan.commands:
                commands = "\n".join(content.test_plan.commands)
                plan_lines.append(f"```bash\n{commands}\n```")
            parts.append("## Test plan\n\n" + "\n\n".join(plan_lines))
    parts.append(f"---\nGenerated by IFI job `{job.job_id}`.")
    return "\n\n".join(parts) + "\n"


def placeholder_patch(*, job: JobView, instruction: str, error: str) -> str:
    """Auditable stand-in for the patch when code generation failed."""

    quoted = "\n".join(f"# {line}" for line in instruction.splitlines()) or "#"
    return (
        f"# {PLACEHOLDER_MARKER}\n"
        f"# Code generation failed for job {job.job_id}; no changes were generated.\n"
        f"# Error: {error}\n"
        f"# Instruction:\n"
        f"{quoted}\n"
    )


def parse_spec_payload(payload: Mapping[str, Any]) -> SpecContent:
    """Validate a stored specification payload into typed content."""

    if not isinstance(payload, Mapping):
        raise SpecPayloadError("Specification payload must be a JSON object.")
    goal = payload.get("goal")
    if not isinstance(goal, str) or not goal.strip():
        raise SpecPayloadError("Specification goal must be a non-empty string.")

    test_plan_raw = payload.get("test_plan")
    test_plan: TestPlan | None = None
    if test_plan_raw is not None:
        if not isinstance(test_plan_raw, Mapping):
            raise SpecPayloadError("test_plan must be an object.")
        test_plan = TestPlan(
            strategy=_require_str(test_plan_raw, "strategy", where="test_plan"),
            commands=_str_tuple(test_plan_raw.get("commands"), field_name="test_plan.commands"),
        )

    return SpecContent(
        goal=goal,
        deliverables=tuple(
            _parse_deliverable(item) for item in _list(payload.get("deliverables"), "deliverables")
        ),
        constraints=_str_tuple(payload.get("constraints"), field_name="constraints"),
        acceptance_criteria=_str_tuple(
            payload.get("acceptance_criteria"),
            field_name="acceptance_criteria",
        ),
        risk_notes=_str_tuple(payload.get("risk_notes"), field_name="risk_notes"),
        test_plan=test_plan,
        file_targets=tuple(
            FileTarget(
                path=_require_str(item, "path", where="file_targets"),
                reason=_require_str(item, "reason", where="file_targets"),
            )
            for item in _list(payload.get("file_targets"), "file_targets")
        ),
    )


def spec_content_to_payload(content: SpecContent) -> dict[str, object]:
    deliverables: list[dict[str, str]] = []
    for item in content.deliverables:
        if isinstance(item, TestDeliverable):
            deliverables.append(
                {"kind": "test", "description": item.description, "framework": item.framework},
            )
        else:
            deliverables.append({"kind": "code", "description": item.description})
    payload: dict[str, object] = {
        "goal": content.goal,
        "deliverables": deliverables,
        "constraints": list(content.constraints),
        "acceptance_criteria": list(content.acceptance_criteria),
        "risk_notes": list(content.risk_notes),
        "file_targets": [
            {"path": target.path, "reason": target.reason} for target in content.file_targets
        ],
    }
    if content.test_plan is not None:
        payload["test_plan"] = {
            "strategy": content.test_plan.strategy,
            "commands": list(content.test_plan.commands),
        }
    return payload


def _render_deliverable(item: Deliverable) -> str:
    if isinstance(item, TestDeliverable):
        return f"[test:{item.framework}] {item.description}"
    return f"[code] {item.description}"


def _labelled_list(label: str, items: list[str]) -> str:
    if not items:
        return f"{label}:\n- (none)"
    return f"{label}:\n" + "\n".join(f"- {item}" for item in items)


def _parse_deliverable(item: object) -> Deliverable:
    if not isinstance(item, Mapping):
        raise SpecPayloadError("Each deliverable must be an object.")
    kind = item.get("kind", "code")
    description = _require_str(item, "description", where="deliverables")
    if kind == "code":
        return CodeDeliverable(description=description)
    if kind == "test":
        return TestDeliverable(
            description=description,
            framework=_require_str(item, "framework", where="deliverables"),
        )
    raise SpecPayloadError(f"Unsupported deliverable kind: {kind!r}")


def _list(value: object, field_name: str) -> list[object]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SpecPayloadError(f"{field_name} must be a list.")
    return value


def _str_tuple(value: object, *, field_name: str) -> tuple[str, ...]:
    items = _list(value, field_name)
    if not all(isinstance(item, str) for item in items):
        raise SpecPayloadError(f"{field_name} must contain only strings.")
    return tuple(item for item in items if isinstance(item, str))


def _require_str(item: object, key: str, *, where: str) -> str:
    if not isinstance(item, Mapping):
        raise SpecPayloadError(f"{where} entries must be objects.")
    value = item.get(key)
    if not isinstance(value, str) or not value.strip():
        raise SpecPayloadError(f"{where}.{key} must be a non-empty string.")
    return value
