"""
Optional refine post-processor.

A refine adapter (typically a local LLM) may rewrite a patient's summary,
watch list, questions and plan. Its output is untrusted: it is parsed into a
strict patch shape, merged onto the sanitized result, and re-sanitized.
Anything that fails on the way leaves the input result untouched.
"""

import inspect
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from .engine.deid_guard import sanitize_structured_session
from .exceptions import RefinePatchError
from .types import HandoverSessionResult, PatientCard, PlanItem, TaskOwner, TodoDue, TodoPriority

logger = logging.getLogger(__name__)

# Adapter: (sanitized result dict) -> patch, sync or async
RefineAdapter = Callable[[Dict[str, Any]], Any]

REASON_ADAPTER_MISSING = "refine_adapter_missing"
REASON_OUTPUT_INVALID = "refine_output_invalid"
REASON_NO_CHANGE = "refine_no_change"
REASON_RUNTIME_ERROR = "refine_runtime_error"
REASON_RESIDUAL_PHI = "refine_residual_phi"


# =============================================================================
# PATCH SCHEMA
# =============================================================================

@dataclass
class PlanPatch:
    task: Optional[str] = None
    priority: Optional[TodoPriority] = None
    due: Optional[TodoDue] = None
    owner: Optional[TaskOwner] = None


@dataclass
class PatientPatch:
    patient_key: str
    summary: Optional[str] = None
    watch_for: Optional[List[str]] = None
    questions: Optional[List[str]] = None
    plan: List[PlanPatch] = field(default_factory=list)


@dataclass
class RefinePatch:
    patients: List[PatientPatch] = field(default_factory=list)


def _enum_or_none(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _string_list(value, name: str) -> Optional[List[str]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise RefinePatchError(f"{name} must be a list")
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_plan_patch(data: Any) -> PlanPatch:
    if not isinstance(data, dict):
        raise RefinePatchError("plan item must be an object")
    task = data.get("task")
    if task is not None and not isinstance(task, str):
        raise RefinePatchError("plan task must be a string")
    return PlanPatch(
        task=task.strip() if task else None,
        priority=_enum_or_none(TodoPriority, data.get("priority")),
        due=_enum_or_none(TodoDue, data.get("due")),
        owner=_enum_or_none(TaskOwner, data.get("owner")),
    )


def parse_patient_patch(data: Any) -> PatientPatch:
    if not isinstance(data, dict):
        raise RefinePatchError("patient patch must be an object")
    key = data.get("patientKey")
    if not isinstance(key, str) or not key:
        raise RefinePatchError("patientKey is required")
    summary = data.get("summary")
    if summary is not None and not isinstance(summary, str):
        raise RefinePatchError("summary must be a string")
    plan = data.get("plan") or []
    if not isinstance(plan, list):
        raise RefinePatchError("plan must be a list")
    return PatientPatch(
        patient_key=key,
        summary=summary.strip() if summary else None,
        watch_for=_string_list(data.get("watchFor"), "watchFor"),
        questions=_string_list(data.get("questions"), "questions"),
        plan=[parse_plan_patch(item) for item in plan],
    )


def parse_refine_patch(raw: Any) -> RefinePatch:
    """Parse adapter output; accepts a bare patch or ``{"result": patch}``."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise RefinePatchError("patch is not valid JSON") from e
    if isinstance(raw, dict) and isinstance(raw.get("result"), dict):
        raw = raw["result"]
    if not isinstance(raw, dict) or not isinstance(raw.get("patients"), list):
        raise RefinePatchError("patch must carry a patients list")
    return RefinePatch(patients=[parse_patient_patch(p) for p in raw["patients"]])


# =============================================================================
# MERGE
# =============================================================================

def _task_key(task: Optional[str]) -> str:
    return " ".join((task or "").split()).lower()


def merge_plan(base: List[PlanItem], patches: List[PlanPatch]) -> List[PlanItem]:
    """Patch plan items, carrying evidence over by task text, then by position."""
    if not patches:
        return base

    by_task: Dict[str, List[PlanItem]] = {}
    for item in base:
        key = _task_key(item.task)
        if key:
            by_task.setdefault(key, []).append(item)

    merged = []
    for index, patch in enumerate(patches):
        by_index = base[index] if index < len(base) else None
        task = patch.task or (by_index.task if by_index else "")
        bucket = by_task.get(_task_key(task))
        current = bucket.pop(0) if bucket else by_index
        merged.append(PlanItem(
            priority=patch.priority or (current.priority if current else TodoPriority.P2),
            task=task or (current.task if current else ""),
            due=patch.due or (current.due if current else None),
            owner=patch.owner or (current.owner if current else None),
            evidence_ref=current.evidence_ref if current else None,
        ))
    return merged


def merge_patient(base: PatientCard, patch: PatientPatch) -> PatientCard:
    return replace(
        base,
        summary=patch.summary or base.summary,
        watch_for=patch.watch_for if patch.watch_for is not None else base.watch_for,
        questions=patch.questions if patch.questions is not None else base.questions,
        plan=merge_plan(base.plan, patch.plan),
    )


def merge_refine_patch(base: HandoverSessionResult, patch: RefinePatch) -> HandoverSessionResult:
    if len(patch.patients) != len(base.patients):
        raise RefinePatchError("patient count mismatch")
    patients = []
    for card, patient_patch in zip(base.patients, patch.patients):
        if patient_patch.patient_key != card.patient_key:
            raise RefinePatchError("patientKey mismatch")
        patients.append(merge_patient(card, patient_patch))
    return replace(base, patients=patients)


# =============================================================================
# ENTRY POINT
# =============================================================================

@dataclass
class RefineOutcome:
    result: HandoverSessionResult
    refined: bool
    reason: Optional[str] = None


async def refine_result(
    result: HandoverSessionResult,
    adapter: Optional[RefineAdapter] = None,
) -> RefineOutcome:
    """
    Apply an untrusted refine adapter to a session result.

    The adapter only ever sees the sanitized result, and is never called
    when the input carries residual PHI or is not export-allowed. On any
    failure the sanitized input is returned with ``refined=False`` and a
    reason code.
    """
    sanitized = sanitize_structured_session(result)
    safe_input = sanitized.result
    if adapter is None:
        return RefineOutcome(safe_input, False, REASON_ADAPTER_MISSING)

    if sanitized.residual_issues or not result.safety.export_allowed:
        logger.warning(
            f"Refine skipped for session {result.session_id}: "
            f"{len(sanitized.residual_issues)} residual issue(s), export_allowed={result.safety.export_allowed}"
        )
        return RefineOutcome(safe_input, False, REASON_RESIDUAL_PHI)

    try:
        raw = adapter(safe_input.to_dict())
        if inspect.isawaitable(raw):
            raw = await raw
    except Exception as e:
        logger.warning(f"Refine adapter failed: {type(e).__name__}")
        return RefineOutcome(safe_input, False, REASON_RUNTIME_ERROR)

    try:
        merged = merge_refine_patch(safe_input, parse_refine_patch(raw))
    except RefinePatchError as e:
        logger.info(f"Refine output rejected: {e}")
        return RefineOutcome(safe_input, False, REASON_OUTPUT_INVALID)

    if [p.to_dict() for p in merged.patients] == [p.to_dict() for p in safe_input.patients]:
        return RefineOutcome(safe_input, False, REASON_NO_CHANGE)

    checked = sanitize_structured_session(merged)
    if checked.residual_issues:
        logger.warning(f"Refine output carries residual PHI ({len(checked.residual_issues)} hit(s)); discarded")
        return RefineOutcome(safe_input, False, REASON_RESIDUAL_PHI)

    refined = checked.result
    refined.provenance.llm_refined = True
    return RefineOutcome(refined, True, None)
