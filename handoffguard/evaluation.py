"""Evaluation runner for the handoff pipeline.

A dataset is a YAML or JSON file with a ``cases`` list. Each case provides
either ``segments`` (text plus optional ``expectedPatient``) or a free-text
``transcript``, and an ``expected`` block:

    expected:
      patientCount: 3            # or patientCountMin
      todoPatterns:       [{pattern: "혈당", patient: P1}]
      globalTopPatterns:  [{pattern: "혈압", rankMax: 5}]
      uncertaintyKindsMustInclude:    [missing_time]
      uncertaintyKindsMustNotInclude: [ambiguous_patient]
      phiTokens: ["김민준", "010-1234-5678"]
"""

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import logging
import math
import re
import time

import yaml
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Config
from .exceptions import DatasetError
from .lexicon import ClinicalLexicon
from .pipeline import PipelineOutput, run_handoff_pipeline, transcript_to_raw_segments
from .types import RawSegment

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_SEGMENT_DURATION_MS = 4000
PASS_THRESHOLD = 0.8

# Weighted case score; missing parts are left out and the rest renormalized
SCORE_WEIGHTS = {
    "segment": 0.45,
    "todo": 0.2,
    "top": 0.15,
    "uncertainty_include": 0.1,
    "patient_count": 0.1,
}
MUST_NOT_PENALTY = 0.15
PHI_LEAK_PENALTY = 0.15


# =============================================================================
# DATASET
# =============================================================================

@dataclass
class EvalCase:
    """A single evaluation case."""
    id: str
    duty_type: str = "night"
    segments: List[Dict[str, Any]] = field(default_factory=list)
    transcript: Optional[str] = None
    segment_duration_ms: int = DEFAULT_SEGMENT_DURATION_MS
    expected: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvalCase":
        case_id = str(data.get("id") or "")
        if not case_id:
            raise DatasetError("every case requires a non-empty id")
        segments = data.get("segments") or []
        transcript = data.get("transcript")
        if not segments and not (isinstance(transcript, str) and transcript.strip()):
            raise DatasetError(f"case {case_id}: either segments or transcript is required")
        return cls(
            id=case_id,
            duty_type=data.get("dutyType", "night"),
            segments=list(segments),
            transcript=transcript,
            segment_duration_ms=int(data.get("segmentDurationMs", DEFAULT_SEGMENT_DURATION_MS)),
            expected=dict(data.get("expected") or {}),
        )

    def raw_segments(self) -> List[RawSegment]:
        if self.segments:
            result = []
            for index, segment in enumerate(self.segments):
                start_ms = int(segment.get("startMs", index * self.segment_duration_ms))
                end_ms = int(segment.get("endMs", start_ms + self.segment_duration_ms))
                result.append(RawSegment(
                    segment_id=f"{self.id}-seg-{index + 1:03d}",
                    raw_text=str(segment.get("text") or ""),
                    start_ms=start_ms,
                    end_ms=end_ms,
                ))
            return result
        return transcript_to_raw_segments(
            self.transcript or "",
            segment_duration_ms=self.segment_duration_ms,
            id_prefix=self.id,
        )


def load_dataset(path: Path) -> Tuple[str, List[EvalCase]]:
    """Load a YAML or JSON dataset. Returns (name, cases)."""
    path = Path(path)
    if not path.exists():
        raise DatasetError(f"dataset not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (yaml.YAMLError, ValueError) as e:
        raise DatasetError(f"failed to parse dataset {path.name}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("cases"), list) or not data["cases"]:
        raise DatasetError("dataset.cases must be a non-empty list")

    cases = [EvalCase.from_dict(item) for item in data["cases"]]
    return str(data.get("name") or path.stem), cases


# =============================================================================
# METRICS
# =============================================================================

def safe_regex(pattern: str, flags: str = "i") -> Optional["re.Pattern"]:
    value = re.IGNORECASE if "i" in (flags or "") else 0
    try:
        return re.compile(pattern, value)
    except re.error:
        logger.warning(f"Invalid expectation pattern: {pattern!r}")
        return None


def match_any(texts: Sequence[str], spec: Dict[str, Any]) -> bool:
    regex = safe_regex(str(spec.get("pattern", "")), spec.get("flags", "i"))
    if regex is None:
        return False
    return any(regex.search(text) for text in texts)


def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile; 0 for an empty sequence."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, math.ceil(p / 100 * len(ordered)) - 1))
    return ordered[index]


def find_best_alias_mapping(
    pred_aliases: Sequence[str],
    expected_labels: Sequence[str],
    matrix: Sequence[Sequence[int]],
) -> Dict[str, str]:
    """
    One-to-one predicted alias -> expected label assignment maximising the
    number of agreeing segments.

    Exhaustive over label subsets (bitmask DP); fine for ward-sized inputs.
    """
    n, m = len(pred_aliases), len(expected_labels)

    @lru_cache(maxsize=None)
    def best(i: int, used: int) -> int:
        if i >= n:
            return 0
        score = best(i + 1, used)
        for j in range(m):
            if not used & (1 << j):
                score = max(score, matrix[i][j] + best(i + 1, used | (1 << j)))
        return score

    mapping: Dict[str, str] = {}
    used = 0
    for i in range(n):
        current = best(i, used)
        if best(i + 1, used) == current:
            continue
        for j in range(m):
            if used & (1 << j):
                continue
            if matrix[i][j] + best(i + 1, used | (1 << j)) == current:
                mapping[pred_aliases[i]] = expected_labels[j]
                used |= 1 << j
                break
    return mapping


@dataclass
class SegmentEval:
    accuracy: float
    mapping: Dict[str, str]  # predicted alias -> expected label

    @property
    def expected_to_pred(self) -> Dict[str, str]:
        return {expected: pred for pred, expected in self.mapping.items()}


def evaluate_segment_assignment(
    case: EvalCase,
    raw_segments: Sequence[RawSegment],
    output: PipelineOutput,
) -> Optional[SegmentEval]:
    labelled = [s for s in case.segments if "expectedPatient" in s]
    if not labelled or len(labelled) != len(raw_segments):
        return None

    rows = [
        (spec.get("expectedPatient"), output.local.segment_aliases.get(segment.segment_id))
        for spec, segment in zip(case.segments, raw_segments)
    ]
    expected_labels = list(dict.fromkeys(e for e, _ in rows if e))
    pred_aliases = list(dict.fromkeys(p for _, p in rows if p))

    matrix = [[0] * len(expected_labels) for _ in pred_aliases]
    for expected, pred in rows:
        if expected and pred:
            matrix[pred_aliases.index(pred)][expected_labels.index(expected)] += 1
    mapping = find_best_alias_mapping(pred_aliases, expected_labels, matrix)

    correct = 0
    for expected, pred in rows:
        if not expected:
            correct += pred is None
        elif pred and mapping.get(pred) == expected:
            correct += 1

    return SegmentEval(accuracy=correct / len(rows) if rows else 0.0, mapping=mapping)


@dataclass
class RecallEval:
    recall: float
    hits: int
    total: int
    misses: List[str] = field(default_factory=list)


def evaluate_todo_patterns(
    case: EvalCase,
    output: PipelineOutput,
    segment_eval: Optional[SegmentEval],
) -> Optional[RecallEval]:
    patterns = case.expected.get("todoPatterns") or []
    if not patterns:
        return None

    todos_by_alias = {p.alias: [t.text for t in p.todos] for p in output.result.patients}
    all_todos = [text for texts in todos_by_alias.values() for text in texts]
    expected_to_pred = segment_eval.expected_to_pred if segment_eval else {}

    hits = 0
    misses = []
    for spec in patterns:
        label = spec.get("patient")
        if not label:
            candidates = all_todos
        elif label in expected_to_pred:
            candidates = todos_by_alias.get(expected_to_pred[label], [])
        else:
            # a labelled pattern whose patient was never mapped can only miss
            candidates = [] if expected_to_pred else all_todos

        if match_any(candidates, spec):
            hits += 1
        else:
            misses.append(f"{label or 'any'}:{spec.get('pattern')}")

    return RecallEval(hits / len(patterns), hits, len(patterns), misses)


def evaluate_global_top(case: EvalCase, output: PipelineOutput) -> Optional[RecallEval]:
    patterns = case.expected.get("globalTopPatterns") or []
    if not patterns:
        return None

    hits = 0
    misses = []
    for spec in patterns:
        rank_max = int(spec.get("rankMax", 5))
        texts = [item.text for item in output.result.global_top[:rank_max]]
        if match_any(texts, spec):
            hits += 1
        else:
            misses.append(f"{spec.get('pattern')}@{rank_max}")

    return RecallEval(hits / len(patterns), hits, len(patterns), misses)


@dataclass
class UncertaintyEval:
    include_recall: Optional[float]
    must_not_pass: bool
    violated: List[str] = field(default_factory=list)


def evaluate_uncertainty(case: EvalCase, output: PipelineOutput) -> Optional[UncertaintyEval]:
    must_include = case.expected.get("uncertaintyKindsMustInclude") or []
    must_not = case.expected.get("uncertaintyKindsMustNotInclude") or []
    if not must_include and not must_not:
        return None

    present = {item.kind.value for item in output.result.uncertainties}
    include_recall = (
        sum(1 for kind in must_include if kind in present) / len(must_include)
        if must_include else None
    )
    violated = [kind for kind in must_not if kind in present]
    return UncertaintyEval(include_recall, not violated, violated)


def evaluate_patient_count(case: EvalCase, output: PipelineOutput) -> Optional[bool]:
    expected_count = case.expected.get("patientCount")
    expected_min = case.expected.get("patientCountMin")
    if expected_count is None and expected_min is None:
        return None

    predicted = len(output.result.patients)
    if expected_count is not None and predicted != int(expected_count):
        return False
    if expected_min is not None and predicted < int(expected_min):
        return False
    return True


def find_phi_leaks(case: EvalCase, output: PipelineOutput) -> List[str]:
    """Expected PHI tokens that survive anywhere in the exported result."""
    tokens = [str(t) for t in case.expected.get("phiTokens") or [] if str(t).strip()]
    if not tokens:
        return []
    payload = json.dumps(output.result.to_dict(), ensure_ascii=False)
    return [token for token in tokens if token in payload]


def compute_case_score(
    segment: Optional[float] = None,
    todo: Optional[float] = None,
    top: Optional[float] = None,
    uncertainty_include: Optional[float] = None,
    patient_count_pass: Optional[bool] = None,
    must_not_pass: Optional[bool] = None,
    phi_leaks: int = 0,
) -> float:
    parts = {
        "segment": segment,
        "todo": todo,
        "top": top,
        "uncertainty_include": uncertainty_include,
        "patient_count": None if patient_count_pass is None else float(patient_count_pass),
    }
    weighted = [(SCORE_WEIGHTS[name], value) for name, value in parts.items() if value is not None]
    if not weighted:
        return 0.0

    total_weight = sum(w for w, _ in weighted)
    base = sum(w * v for w, v in weighted) / total_weight
    if must_not_pass is False:
        base -= MUST_NOT_PENALTY
    if phi_leaks:
        base -= PHI_LEAK_PENALTY
    return max(0.0, base)


# =============================================================================
# RUNNER
# =============================================================================

@dataclass
class CaseResult:
    """Evaluation result for a single case."""
    id: str
    score: float
    runtime_ms: float
    segment_accuracy: Optional[float] = None
    todo_recall: Optional[float] = None
    global_top_recall: Optional[float] = None
    uncertainty_include_recall: Optional[float] = None
    uncertainty_exclude_pass: Optional[bool] = None
    patient_count_pass: Optional[bool] = None
    todo_misses: List[str] = field(default_factory=list)
    top_misses: List[str] = field(default_factory=list)
    uncertainty_violated: List[str] = field(default_factory=list)
    phi_leaks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "runtimeMs": self.runtime_ms,
            "segmentAccuracy": self.segment_accuracy,
            "todoRecall": self.todo_recall,
            "globalTopRecall": self.global_top_recall,
            "uncertaintyIncludeRecall": self.uncertainty_include_recall,
            "uncertaintyExcludePass": self.uncertainty_exclude_pass,
            "patientCountPass": self.patient_count_pass,
            "todoMisses": self.todo_misses,
            "topMisses": self.top_misses,
            "uncertaintyViolated": self.uncertainty_violated,
            # counts only; leaked tokens are PHI
            "phiLeakCount": len(self.phi_leaks),
        }


def _mean(values: Sequence[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return sum(present) / len(present) if present else None


@dataclass
class EvalReport:
    """Aggregate evaluation results."""
    dataset_name: str
    cases: List[CaseResult] = field(default_factory=list)

    @property
    def avg_score(self) -> float:
        return _mean([c.score for c in self.cases]) or 0.0

    @property
    def pass_rate(self) -> float:
        if not self.cases:
            return 0.0
        return sum(1 for c in self.cases if c.score >= PASS_THRESHOLD) / len(self.cases)

    @property
    def phi_leak_cases(self) -> int:
        return sum(1 for c in self.cases if c.phi_leaks)

    def summary(self) -> Dict[str, Any]:
        runtimes = [c.runtime_ms for c in self.cases]
        count_checks = [c.patient_count_pass for c in self.cases if c.patient_count_pass is not None]
        return {
            "dataset": self.dataset_name,
            "totalCases": len(self.cases),
            "avgScore": self.avg_score,
            "passRateAt80": self.pass_rate,
            "avgRuntimeMs": _mean(runtimes) or 0.0,
            "p50RuntimeMs": percentile(runtimes, 50),
            "p95RuntimeMs": percentile(runtimes, 95),
            "splitAccuracyAvg": _mean([c.segment_accuracy for c in self.cases]),
            "todoRecallAvg": _mean([c.todo_recall for c in self.cases]),
            "globalTopRecallAvg": _mean([c.global_top_recall for c in self.cases]),
            "uncertaintyIncludeRecallAvg": _mean([c.uncertainty_include_recall for c in self.cases]),
            "patientCountPassRate": (
                sum(1 for v in count_checks if v) / len(count_checks) if count_checks else None
            ),
            "phiLeakCases": self.phi_leak_cases,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary(), "cases": [c.to_dict() for c in self.cases]}


class EvalRunner:
    """Runs the handoff pipeline over evaluation cases."""

    def __init__(self, config: Optional[Config] = None, lexicon: Optional[ClinicalLexicon] = None):
        self.config = config
        self.lexicon = lexicon

    def run_case(self, case: EvalCase) -> CaseResult:
        raw_segments = case.raw_segments()
        started = time.perf_counter()
        output = run_handoff_pipeline(
            session_id=f"eval_{case.id}",
            duty_type=case.duty_type,
            raw_segments=raw_segments,
            config=self.config,
            lexicon=self.lexicon,
        )
        runtime_ms = (time.perf_counter() - started) * 1000

        segment_eval = evaluate_segment_assignment(case, raw_segments, output)
        todo_eval = evaluate_todo_patterns(case, output, segment_eval)
        top_eval = evaluate_global_top(case, output)
        uncertainty_eval = evaluate_uncertainty(case, output)
        count_pass = evaluate_patient_count(case, output)
        leaks = find_phi_leaks(case, output)
        if leaks:
            logger.warning(f"Case {case.id}: {len(leaks)} PHI token(s) leaked into the result")

        score = compute_case_score(
            segment=segment_eval.accuracy if segment_eval else None,
            todo=todo_eval.recall if todo_eval else None,
            top=top_eval.recall if top_eval else None,
            uncertainty_include=uncertainty_eval.include_recall if uncertainty_eval else None,
            patient_count_pass=count_pass,
            must_not_pass=uncertainty_eval.must_not_pass if uncertainty_eval else None,
            phi_leaks=len(leaks),
        )

        return CaseResult(
            id=case.id,
            score=score,
            runtime_ms=runtime_ms,
            segment_accuracy=segment_eval.accuracy if segment_eval else None,
            todo_recall=todo_eval.recall if todo_eval else None,
            global_top_recall=top_eval.recall if top_eval else None,
            uncertainty_include_recall=uncertainty_eval.include_recall if uncertainty_eval else None,
            uncertainty_exclude_pass=uncertainty_eval.must_not_pass if uncertainty_eval else None,
            patient_count_pass=count_pass,
            todo_misses=todo_eval.misses if todo_eval else [],
            top_misses=top_eval.misses if top_eval else [],
            uncertainty_violated=uncertainty_eval.violated if uncertainty_eval else [],
            phi_leaks=leaks,
        )

    def run(
        self,
        cases: Sequence[EvalCase],
        dataset_name: str = "dataset",
        show_progress: bool = True,
    ) -> EvalReport:
        report = EvalReport(dataset_name=dataset_name)

        if not show_progress:
            for case in cases:
                report.cases.append(self.run_case(case))
            return report

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        ) as progress:
            task = progress.add_task("Evaluating cases...", total=len(cases))
            for case in cases:
                report.cases.append(self.run_case(case))
                progress.advance(task)

        return report


# =============================================================================
# DISPLAY
# =============================================================================

def _pct(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.1%}"


def display_eval_report(report: EvalReport) -> None:
    """Display evaluation results with rich formatting."""
    summary = report.summary()

    console.print()
    console.print(f"[bold]Handoff Evaluation: {report.dataset_name}[/bold]")
    console.print("─" * 60)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Case")
    table.add_column("Score", justify="right")
    table.add_column("Split", justify="right")
    table.add_column("Todo", justify="right")
    table.add_column("Top", justify="right")
    table.add_column("Count", justify="center")
    table.add_column("PHI", justify="center")
    table.add_column("ms", justify="right")

    for case in report.cases:
        style = "green" if case.score >= PASS_THRESHOLD else "yellow" if case.score >= 0.6 else "red"
        count = "-" if case.patient_count_pass is None else ("✓" if case.patient_count_pass else "✗")
        table.add_row(
            case.id,
            f"[{style}]{case.score:.1%}[/{style}]",
            _pct(case.segment_accuracy),
            _pct(case.todo_recall),
            _pct(case.global_top_recall),
            count,
            "[red]LEAK[/red]" if case.phi_leaks else "ok",
            f"{case.runtime_ms:.1f}",
        )

    console.print(table)

    for case in report.cases:
        if case.todo_misses:
            console.print(f"  [dim]{case.id} todo misses:[/dim] {', '.join(case.todo_misses)}")
        if case.top_misses:
            console.print(f"  [dim]{case.id} top misses:[/dim] {', '.join(case.top_misses)}")
        if case.uncertainty_violated:
            console.print(f"  [dim]{case.id} uncertainty violated:[/dim] {', '.join(case.uncertainty_violated)}")

    console.print()
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Avg score: {summary['avgScore']:.1%}")
    console.print(f"  Pass@80:   {summary['passRateAt80']:.1%}")
    console.print(
        f"  Runtime avg/p50/p95: {summary['avgRuntimeMs']:.1f}ms / "
        f"{summary['p50RuntimeMs']:.1f}ms / {summary['p95RuntimeMs']:.1f}ms"
    )
    if summary["phiLeakCases"]:
        console.print(f"  [red]PHI leaks in {summary['phiLeakCases']} case(s)[/red]")
    console.print()
