"""
Clinical salience scoring.

Weighted keyword rules map a sentence to risk codes; the best rule (plus an
urgency bonus and a night-duty bonus) gives the sentence priority.
"""

import re
from dataclasses import dataclass, field
from typing import List, Pattern, Tuple

from ..types import DutyType, RiskLevel

URGENCY_BONUS = 20
NIGHT_BONUS = 4
BASELINE_SCORE = 12
BASELINE_URGENCY_BONUS = 8
HIGH_THRESHOLD = 70
MEDIUM_THRESHOLD = 40

URGENCY_KEYWORD_PATTERN = re.compile(r"(즉시|바로|응급|호흡곤란|의식저하|긴급)", re.IGNORECASE)

BADGES = {
    RiskLevel.HIGH: "즉시 확인",
    RiskLevel.MEDIUM: "우선 확인",
    RiskLevel.LOW: "모니터링",
}


@dataclass(frozen=True)
class RiskRule:
    code: str
    label: str
    weight: int
    pattern: Pattern
    rationale: str
    actions: Tuple[str, ...]


def _rule(code, label, weight, pattern, rationale, actions) -> RiskRule:
    return RiskRule(code, label, weight, re.compile(pattern, re.IGNORECASE), rationale, tuple(actions))


# Patterns carry both the abbreviation and the canonical Korean term, since
# the normalizer has usually already expanded the former.
RISK_RULES: Tuple[RiskRule, ...] = (
    _rule("AIRWAY", "기도", 40, r"(기도|airway|삽관|ETT|기관내관|기도폐쇄|흡인)",
          "기도 관련 위험 신호가 포함되어 즉시 확인이 필요합니다.",
          ["기도 개방/튜브 위치 확인", "산소공급 상태 재점검", "기관 프로토콜에 따라 즉시 보고"]),
    _rule("BREATHING", "호흡", 40, r"(호흡곤란|저산소|SpO2|산소포화도|환기|ventilator|호흡수)",
          "호흡 관련 급성 악화 가능성이 있습니다.",
          ["호흡수/산소포화도 즉시 재확인", "산소장치/회로 점검", "악화 시 즉시 보고"]),
    _rule("CIRCULATION", "순환", 40,
          r"(저혈압|(?<![A-Za-z])MAP(?![A-Za-z])|평균동맥압|쇼크|혈압\s*[0-9]{2,3}\s*/\s*[0-9]{2,3}|순환)",
          "순환 저하 신호가 있어 우선 조치가 필요합니다.",
          ["혈압/평균동맥압 재측정", "라인/펌프 상태 확인", "승압제 조정 여부 기관 기준 확인"]),
    _rule("CIRCULATION", "I/O", 36, r"(소변량|섭취/?배설량|섭취배설량|수분출납|I/O|urine\s*output|요량|oliguria)",
          "소변량/I/O 변화가 있어 순환·신장 관류 저하 가능성을 확인해야 합니다.",
          ["소변량/I/O 추이 즉시 재확인", "수액/혈역학 상태 동시 점검", "기관 기준에 따라 보고/오더 확인"]),
    _rule("BLEEDING", "출혈/항응고", 30, r"(출혈|흑변|혈변|토혈|멍|aPTT|응고|헤파린)",
          "출혈 또는 응고 이상 가능성이 시사됩니다.",
          ["흑변/항응고 포함 출혈 징후 재평가", "응고수치 확인", "항응고제 투여 상태 기관 기준 확인"]),
    _rule("SEPSIS", "감염/패혈", 25, r"(발열|오한|패혈|sepsis|감염|중심정맥관|CRP|염증수치|WBC|백혈구)",
          "감염/패혈증 위험 신호를 포함합니다.",
          ["체온/활력징후 재평가", "배양/검사 진행 상태 확인", "악화 징후 즉시 보고"]),
    _rule("ARRHYTHMIA", "리듬", 25, r"(부정맥|arrhythmia|(?<![A-Za-z])(?:AF|VF|VT)(?![A-Za-z])|서맥|빈맥)",
          "리듬 이상 가능성이 있어 모니터링 강화가 필요합니다.",
          ["심전도/모니터 리듬 확인", "증상 동반 여부 확인", "기관 기준에 따라 즉시 보고"]),
    _rule("HIGH_ALERT_MED", "고위험약물", 20, r"(vasopressor|노르에피|인슐린|헤파린|opioid|KCl|염화칼륨|진정제|sedative)",
          "고위험 약물 관련 항목이 포함되어 있습니다.",
          ["약물명/속도/경로 더블체크", "펌프 설정 재확인", "기관 고위험약 프로토콜 준수 확인"]),
    _rule("DEVICE_FAILURE", "기기", 15, r"(high pressure|occlusion|알람|기기오류|pump failure|vent alarm)",
          "기기 알람/고장 가능성이 감지됩니다.",
          ["기기/라인 연결상태 점검", "알람 원인 확인 후 해소", "지속 알람 시 즉시 보고"]),
    _rule("NEURO_CHANGE", "의식", 20, r"(의식저하|섬망|신경학적|neuro|지남력 저하|동공)",
          "신경학적 상태 변화 가능성이 있습니다.",
          ["신경학적 사정 재실시", "의식 수준 추적", "악화 시 즉시 보고"]),
    _rule("ALLERGY_REACTION", "알레르기", 20, r"(알레르기|allergy|두드러기|아나필락시스|호흡곤란.*약)",
          "약물/물질 반응 위험 신호가 있습니다.",
          ["노출 약물 확인", "호흡/혈압 상태 확인", "기관 프로토콜 따라 즉시 조치"]),
    _rule("TRANSFUSION_REACTION", "수혈", 20, r"(수혈|transfusion|오한.*수혈|발열.*수혈)",
          "수혈 반응 가능성을 시사합니다.",
          ["수혈 진행 상태 확인", "반응 징후 재평가", "기관 기준 따라 즉시 보고"]),
    _rule("ELECTROLYTE_CRITICAL", "전해질", 15, r"(KCl|염화칼륨|칼륨|나트륨|electrolyte|저나트륨|고나트륨|저칼륨|고칼륨)",
          "전해질 이상 가능성이 있습니다.",
          ["전해질 수치 재확인", "이상 수치 보고 및 조치 확인", "심전도/증상 동반 여부 확인"]),
    _rule("GLUCOSE_CRITICAL", "혈당", 15, r"(저혈당|고혈당|혈당\s*[0-9]+|insulin sliding|인슐린)",
          "혈당 급변 가능성이 포함되어 있습니다.",
          ["혈당 재측정", "저/고혈당 프로토콜 확인", "증상 동반 시 즉시 보고"]),
    _rule("FALL_RISK", "낙상", 12, r"(낙상|보행불안정|assist 필요|보조 필요|bed alarm|침상경보)",
          "낙상 위험 인자가 있습니다.",
          ["낙상 예방수칙 재적용", "침상/보행 보조 강화", "고위험군 표식 확인"]),
    _rule("PRESSURE_INJURY", "욕창", 10, r"(욕창|압박손상|pressure injury|체위변경)",
          "피부 손상 위험 인자가 포함됩니다.",
          ["체위변경 계획 확인", "피부 상태 점검", "예방 패드/도구 적용 확인"]),
)


@dataclass
class RiskMatch:
    code: str
    label: str
    score: int
    rationale: str
    actions: List[str] = field(default_factory=list)


@dataclass
class PriorityScore:
    score: int
    level: RiskLevel
    badge: str
    risks: List[RiskMatch] = field(default_factory=list)

    @property
    def labels(self) -> List[str]:
        return [r.code for r in self.risks]


def risk_level_from_score(score: int) -> RiskLevel:
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _duty(duty_type) -> DutyType:
    return duty_type if isinstance(duty_type, DutyType) else DutyType(duty_type)


def rank_risk_score(score: int, duty_type: DutyType) -> int:
    bonus = NIGHT_BONUS if _duty(duty_type) == DutyType.NIGHT else 0
    return min(100, score + bonus)


def evaluate_risks(text: str, duty_type: DutyType) -> List[RiskMatch]:
    """Every matching risk rule, highest score first (stable)."""
    urgency = URGENCY_BONUS if URGENCY_KEYWORD_PATTERN.search(text) else 0
    matches = [
        RiskMatch(
            code=rule.code,
            label=rule.label,
            score=rank_risk_score(rule.weight + urgency, duty_type),
            rationale=rule.rationale,
            actions=list(rule.actions),
        )
        for rule in RISK_RULES
        if rule.pattern.search(text)
    ]
    return sorted(matches, key=lambda m: -m.score)


def score_priority(text: str, duty_type: DutyType) -> PriorityScore:
    risks = evaluate_risks(text, duty_type)
    if risks:
        score = risks[0].score
    else:
        urgency = BASELINE_URGENCY_BONUS if URGENCY_KEYWORD_PATTERN.search(text) else 0
        score = rank_risk_score(BASELINE_SCORE + urgency, duty_type)
    level = risk_level_from_score(score)
    return PriorityScore(score=score, level=level, badge=BADGES[level], risks=risks)
