"""Faker-based synthetic handoff transcript generator.

Produces labelled multi-patient handoff cases in the evaluation dataset
format: every segment carries the patient it belongs to (``P1``, ``P2``, ...
or None for ward-level events), and ``expected.phiTokens`` lists the
cleartext identifiers that must never appear in pipeline output.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import random

from faker import Faker
import yaml

fake = Faker("ko_KR")


# Patient scenarios. Intro lines carry the room + name anchors; follow-up
# lines rely on clinical continuation cues to stay with the patient.
SCENARIOS = [
    {
        "problem": "폐렴",
        "intro": "{room}호 {name}님 폐렴으로 항생제 치료 중이고 체온 {temp}도까지 올랐습니다.",
        "followups": [
            "산소 {o2}L 유지 중이고 SpO2 {spo2}% 나옵니다.",
            "항생제 {hour}시 투약 예정입니다.",
        ],
        "todo": "새벽 {early}시에 체온 재측정 필요합니다.",
        "todo_pattern": "체온|재측정",
        "top_pattern": "체온|산소|SpO2",
    },
    {
        "problem": "당뇨",
        "intro": "{room}호 {name}님 당뇨로 인슐린 스케일 중이고 혈당 {bst} 나왔습니다.",
        "followups": [
            "저녁 식후 혈당도 {bst2}로 높은 편입니다.",
        ],
        "todo": "밤 {night}시 혈당 재측정 필요합니다.",
        "todo_pattern": "혈당",
        "top_pattern": "혈당|인슐린",
    },
    {
        "problem": "저혈압",
        "intro": "{room}호 {name}님 수술 후 혈압 {sbp}/{dbp}로 낮게 나왔습니다.",
        "followups": [
            "수액 속도 올리라는 오더 받았고 소변량 시간당 {uo}cc입니다.",
        ],
        "todo": "{hour}시에 혈압 재측정하고 90 이하면 주치의 콜 필요합니다.",
        "todo_pattern": "혈압|콜",
        "top_pattern": "혈압",
    },
    {
        "problem": "섬망",
        "intro": "{room}호 {name}님 섬망 있어서 낙상 고위험으로 bed alarm 켜두었습니다.",
        "followups": [
            "밤에 혼자 화장실 가려고 해서 모니터링 중입니다.",
        ],
        "todo": "새벽 {early}시 의식 상태 다시 확인 필요합니다.",
        "todo_pattern": "의식|확인",
        "top_pattern": "섬망|낙상|의식",
    },
    {
        "problem": "위장관 출혈",
        "intro": "{room}호 {name}님 흑변 있어서 Hb {hb} 나왔고 수혈 오더 있습니다.",
        "followups": [
            "추적 CBC 검사 결과 대기 중입니다.",
        ],
        "todo": "오전 6시 CBC 재검 결과 확인 필요합니다.",
        "todo_pattern": "CBC|재검",
        "top_pattern": "흑변|Hb|수혈",
    },
]

WARD_EVENTS = [
    "금일 병동 퇴원 예정 {n}명 있습니다.",
    "내일 오전 신규 입원 {n}명 예정입니다.",
    "병동 수액 펌프 장비 점검 예정입니다.",
]

PHONE_LINE = "보호자 연락처 {phone} 확인했습니다."

MAX_NAME_LENGTH = 4


def _unique_name(used: set) -> str:
    while True:
        name = f"{fake.last_name()}{fake.first_name()}"
        if 2 <= len(name) <= MAX_NAME_LENGTH and name not in used:
            used.add(name)
            return name


def _unique_room(used: set) -> str:
    while True:
        room = str(random.randint(5, 12) * 100 + random.randint(1, 30))
        if room not in used:
            used.add(room)
            return room


def _fill(template: str, room: str, name: str) -> str:
    return template.format(
        room=room,
        name=name,
        temp=random.choice(["38.2", "38.5", "38.9", "39.1"]),
        o2=random.randint(2, 5),
        spo2=random.randint(89, 95),
        hour=random.choice([18, 20, 22]),
        early=random.choice([2, 4, 5]),
        night=random.choice([21, 22, 23]),
        bst=random.randint(280, 380),
        bst2=random.randint(250, 320),
        sbp=random.randint(78, 88),
        dbp=random.randint(42, 55),
        uo=random.randint(15, 30),
        hb=random.choice(["6.8", "7.1", "7.4"]),
    )


def generate_handoff_case(
    case_id: str,
    patient_count: int = 3,
    duty_type: str = "night",
    include_ward_events: bool = True,
    include_phone: bool = True,
) -> Dict[str, Any]:
    """
    Generate one labelled handoff case.

    Returns:
        Case dict with ``segments`` (text + expectedPatient) and
        ``expected`` (todo patterns, patient count, PHI tokens)
    """
    patient_count = max(1, min(patient_count, len(SCENARIOS)))
    scenarios = random.sample(SCENARIOS, patient_count)

    used_names: set = set()
    used_rooms: set = set()
    segments: List[Dict[str, Any]] = []
    todo_patterns: List[Dict[str, Any]] = []
    phi_tokens: List[str] = []

    for index, scenario in enumerate(scenarios, start=1):
        label = f"P{index}"
        room = _unique_room(used_rooms)
        name = _unique_name(used_names)
        phi_tokens.append(name)

        if include_ward_events and index > 1 and random.random() < 0.5:
            segments.append({
                "text": random.choice(WARD_EVENTS).format(n=random.randint(1, 3)),
                "expectedPatient": None,
            })

        segments.append({"text": _fill(scenario["intro"], room, name), "expectedPatient": label})
        for followup in scenario["followups"]:
            segments.append({"text": _fill(followup, room, name), "expectedPatient": label})

        if include_phone and index == 1:
            phone = fake.numerify("010-####-####")
            phi_tokens.append(phone)
            segments.append({"text": PHONE_LINE.format(phone=phone), "expectedPatient": label})

        segments.append({"text": _fill(scenario["todo"], room, name), "expectedPatient": label})
        todo_patterns.append({"pattern": scenario["todo_pattern"], "patient": label})

    return {
        "id": case_id,
        "dutyType": duty_type,
        "segments": segments,
        "expected": {
            "patientCount": patient_count,
            "todoPatterns": todo_patterns,
            "globalTopPatterns": [{"pattern": scenarios[0]["top_pattern"], "rankMax": 5}],
            "uncertaintyKindsMustNotInclude": ["ambiguous_patient"],
            "phiTokens": phi_tokens,
        },
    }


def generate_dataset(
    n: int = 10,
    seed: Optional[int] = None,
    min_patients: int = 2,
    max_patients: int = 4,
    duty_type: str = "night",
) -> Dict[str, Any]:
    """Generate a synthetic evaluation dataset of ``n`` cases."""
    if seed is not None:
        Faker.seed(seed)
        random.seed(seed)

    cases = []
    for i in range(n):
        cases.append(generate_handoff_case(
            case_id=f"synthetic-{i + 1:03d}",
            patient_count=random.randint(min_patients, max_patients),
            duty_type=duty_type,
        ))

    return {"name": "synthetic", "cases": cases}


def save_dataset(dataset: Dict[str, Any], path: Path):
    """Write a dataset as YAML (.yaml/.yml) or JSON (anything else)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        if path.suffix in (".yaml", ".yml"):
            yaml.dump(dataset, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
        else:
            json.dump(dataset, f, ensure_ascii=False, indent=2)
