"""Shared fixtures for the handoffguard test suite."""

from typing import List, Optional

import pytest

from handoffguard.config import Config
from handoffguard.lexicon import get_lexicon
from handoffguard.types import (
    EvidenceRef,
    HandoverSessionResult,
    MaskedSegment,
    PatientCard,
    PlanItem,
    RawSegment,
)
from handoffguard.vault import MemoryStorage

SEGMENT_MS = 4000

# Two patients, a guardian phone line and a timed follow-up
NIGHT_HANDOFF = [
    "701호 김민준님 폐렴으로 항생제 치료 중이고 체온 38.5도입니다.",
    "산소 2L 유지 중이고 SpO2 92% 나옵니다.",
    "보호자 연락처 010-1234-5678 확인했습니다.",
    "702호 이서연님 당뇨로 인슐린 스케일 중이고 혈당 320 나왔습니다.",
    "밤 10시 혈당 재측정 필요합니다.",
]


class FixedClock:
    """Callable millisecond clock the tests can move forward."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


def make_raw_segments(texts: List[str], prefix: str = "seg") -> List[RawSegment]:
    return [
        RawSegment(
            segment_id=f"{prefix}-{i + 1:03d}",
            raw_text=text,
            start_ms=i * SEGMENT_MS,
            end_ms=(i + 1) * SEGMENT_MS,
        )
        for i, text in enumerate(texts)
    ]


def make_masked(
    segment_id: str,
    text: str,
    start_ms: int,
    alias: Optional[str] = None,
) -> MaskedSegment:
    return MaskedSegment(
        segment_id=segment_id,
        masked_text=text,
        start_ms=start_ms,
        end_ms=start_ms + SEGMENT_MS,
        patient_alias=alias,
    )


def make_result(summary: str = "산소포화도 92% 유지 중입니다.", session_id: str = "session-1") -> HandoverSessionResult:
    ref = EvidenceRef("seg-001", 0, SEGMENT_MS)
    card = PatientCard(
        patient_key="PATIENT_A",
        alias="PATIENT_A",
        summary=summary,
        plan=[PlanItem(priority="P2", task="혈당 재측정", due="today", owner="RN", evidence_ref=ref)],
    )
    return HandoverSessionResult(
        session_id=session_id,
        duty_type="night",
        created_at_ms=0,
        patients=[card],
    )


@pytest.fixture
def lexicon():
    return get_lexicon()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config(tmp_path):
    return Config(data_dir=tmp_path / "data")


@pytest.fixture
def night_segments():
    return make_raw_segments(NIGHT_HANDOFF)
