"""Clinical lexicon loader.

Builds an immutable lookup structure from the bundled YAML lexicon once.
The normalizer receives it by reference; nothing mutates it afterwards.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

import yaml

from ..exceptions import LexiconError

logger = logging.getLogger(__name__)

# Bundled data location (relative to this module)
BUNDLED_DATA_DIR = Path(__file__).parent / "data"
DEFAULT_LEXICON_PATH = BUNDLED_DATA_DIR / "medical_lexicon.yaml"

HANGUL_PARTICLE_SUFFIXES: Tuple[str, ...] = (
    "으로", "에서", "까지",
    "은", "는", "이", "가", "을", "를", "에", "와", "과", "도", "로", "만",
)

BASE_KNOWN_ABBREVIATIONS: FrozenSet[str] = frozenset({
    "V", "VS", "V/S", "BST", "SPO", "SPO2", "BP", "HR", "RR", "PCA", "ABX",
    "PRN", "UO", "NPO", "IV", "PO", "RA", "HB", "IO", "I/O", "LAB", "LABS",
    "CBC", "CRP", "MRI", "CT", "ABGA", "ECG", "EKG", "K", "DM", "POD", "NRS",
    "Q2H", "Q4H", "Q6H", "Q8H", "Q12H", "QD", "BID", "TID", "QID",
})

_SUBSCRIPTS = str.maketrans("₀₁₂₃₄₅₆₇₈₉", "0123456789")
_HANGUL = re.compile(r"[가-힣]")
_VARIANT_SPLIT = re.compile(r"[\s_./-]+")


def normalize_subscript_digits(text: str) -> str:
    return text.translate(_SUBSCRIPTS)


def fold_clinical_token(value: str) -> str:
    """Fold a surface form into its lookup key.

    ``"SpO₂"``, ``"spo2"`` and ``"S.p.O 2"`` all fold to ``"spo2"``.
    """
    folded = unicodedata.normalize("NFKC", normalize_subscript_digits(value).lower())
    folded = re.sub(r"[\s._\-/]+", "", folded)
    folded = re.sub(r"[()\[\]{}'\"`]", "", folded)
    folded = re.sub(r"[;:]", "", folded)
    return folded.replace("&", "and").strip()


def is_likely_abbreviation(value: str) -> bool:
    letters = re.sub(r"[^A-Za-z]", "", value)
    if len(letters) < 2 or len(value) > 12:
        return False
    upper_letters = len(re.findall(r"[A-Z]", value))
    return (
        upper_letters >= 2
        or bool(re.search(r"\d", value))
        or bool(re.fullmatch(r"[A-Za-z]{2,5}", value))
    )


def confusion_pair_key(left: str, right: str) -> str:
    return "|".join(sorted((fold_clinical_token(left), fold_clinical_token(right))))


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class LexiconEntry:
    """One row of the lexicon data file."""
    term: str
    meaning: str
    full: str = ""
    pronunciations: List[str] = field(default_factory=list)
    synonyms: List[str] = field(default_factory=list)

    @property
    def canonical(self) -> str:
        return " ".join(self.meaning.split()) or self.term

    def variants(self) -> List[str]:
        seen: Dict[str, None] = {}
        for value in [self.term, self.full, *self.synonyms, *self.pronunciations, self.canonical]:
            value = (value or "").strip()
            if value:
                seen.setdefault(value, None)
        return list(seen)

    @classmethod
    def from_dict(cls, data: dict) -> "LexiconEntry":
        if not isinstance(data, dict) or not data.get("term") or not data.get("meaning"):
            raise LexiconError(f"Lexicon entry needs term and meaning: {data!r}")
        return cls(
            term=str(data["term"]),
            meaning=str(data["meaning"]),
            full=str(data.get("full") or ""),
            pronunciations=[str(p) for p in data.get("pronunciations") or []],
            synonyms=[str(s) for s in data.get("synonyms") or []],
        )


@dataclass(frozen=True)
class PhraseRule:
    """Multi-word variant rewritten to its canonical term."""
    canonical: str
    pattern: Pattern
    has_hangul: bool
    priority: int
    quick_needles: Tuple[str, ...]

    def apply(self, text: str) -> Tuple[str, bool]:
        if self.quick_needles:
            lowered = text.lower()
            if not any(needle in lowered for needle in self.quick_needles):
                return text, False

        def _sub(match: "re.Match") -> str:
            particle = match.group(3) if self.has_hangul else None
            return f"{match.group(1)}{self.canonical}{particle or ''}"

        replaced = self.pattern.sub(_sub, text)
        return replaced, replaced != text


@dataclass(frozen=True, eq=False)
class ClinicalLexicon:
    """Read-only lexicon lookup shared by every normalizer call."""
    version: int
    single_token_map: Mapping[str, str]
    phrase_rules: Tuple[PhraseRule, ...]
    known_abbreviations: FrozenSet[str]
    confusion_pair_keys: FrozenSet[str]
    entry_count: int

    def lookup(self, token: str) -> Optional[str]:
        return self.single_token_map.get(fold_clinical_token(token))

    def has_confusion_pair(self, left: str, right: str) -> bool:
        return confusion_pair_key(left, right) in self.confusion_pair_keys

    def is_known_abbreviation(self, token: str) -> bool:
        upper = token.upper()
        normalized = re.sub(r"[^A-Z0-9/]", "", upper)
        letters_only = re.sub(r"[0-9]", "", normalized)
        return (
            upper in self.known_abbreviations
            or normalized in self.known_abbreviations
            or letters_only in self.known_abbreviations
        )


# =============================================================================
# BUILDER
# =============================================================================

def _phrase_rule(variant: str, canonical: str, folded: str) -> Optional[Tuple[str, PhraseRule]]:
    parts = [p for p in _VARIANT_SPLIT.split(variant) if p.strip()]
    if len(parts) < 2:
        return None

    core = r"[\s_./-]*".join(re.escape(part) for part in parts)
    has_hangul = bool(_HANGUL.search(variant))
    key = f"{core}|{canonical}|{'ko' if has_hangul else 'en'}"

    if has_hangul:
        particles = "|".join(HANGUL_PARTICLE_SUFFIXES)
        pattern = re.compile(
            rf"(^|[^A-Za-z0-9가-힣])({core})(?:({particles}))?(?=$|[^A-Za-z0-9가-힣])",
            re.IGNORECASE,
        )
    else:
        pattern = re.compile(rf"(^|[^A-Za-z0-9])({core})(?=$|[^A-Za-z0-9])", re.IGNORECASE)

    needles: List[str] = []
    for part in parts:
        needle = part.lower().strip()
        if len(needle) >= 2 and re.search(r"[a-z가-힣]", needle) and needle not in needles:
            needles.append(needle)

    return key, PhraseRule(
        canonical=canonical,
        pattern=pattern,
        has_hangul=has_hangul,
        priority=len(folded),
        quick_needles=tuple(needles[:2]),
    )


def build_lexicon(
    entries: Iterable[LexiconEntry],
    confusion_pairs: Sequence[Sequence[str]] = (),
    version: int = 0,
) -> ClinicalLexicon:
    """Build the immutable lookup from lexicon entries.

    Single tokens map folded variant -> canonical (first entry wins).
    Multi-word variants become phrase rules sorted longest-first by folded
    length. Abbreviation-looking variants extend the known-abbreviation set.
    """
    single: Dict[str, str] = {}
    rules: Dict[str, PhraseRule] = {}
    known = set(BASE_KNOWN_ABBREVIATIONS)
    count = 0

    for entry in entries:
        count += 1
        canonical = entry.canonical
        for variant in entry.variants():
            folded = fold_clinical_token(variant)
            if not folded:
                continue
            single.setdefault(folded, canonical)

            if is_likely_abbreviation(variant):
                upper = re.sub(r"[^A-Z0-9/]", "", variant.upper())
                letters_only = re.sub(r"[0-9]", "", upper)
                if upper:
                    known.add(upper)
                if letters_only:
                    known.add(letters_only)

            built = _phrase_rule(variant, canonical, folded)
            if built and built[0] not in rules:
                rules[built[0]] = built[1]

    # confusion-pair members are known tokens, flagged as confusable instead
    for pair in confusion_pairs:
        for member in pair:
            upper = re.sub(r"[^A-Z0-9/]", "", member.upper())
            if upper:
                known.add(upper)

    # stable sort keeps file order among equal priorities
    ordered = tuple(sorted(rules.values(), key=lambda rule: -rule.priority))

    return ClinicalLexicon(
        version=version,
        single_token_map=MappingProxyType(dict(single)),
        phrase_rules=ordered,
        known_abbreviations=frozenset(known),
        confusion_pair_keys=frozenset(confusion_pair_key(a, b) for a, b in confusion_pairs),
        entry_count=count,
    )


def load_lexicon(path: Optional[Path] = None) -> ClinicalLexicon:
    """
    Load a lexicon YAML file.

    Args:
        path: Lexicon file; defaults to the bundled lexicon.

    Raises:
        LexiconError: file missing or not shaped like a lexicon.
    """
    path = Path(path) if path else DEFAULT_LEXICON_PATH
    if not path.exists():
        raise LexiconError(f"Lexicon not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise LexiconError(f"Lexicon {path.name} is not valid YAML: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
        raise LexiconError(f"Lexicon {path.name} has no entries list")

    entries = [LexiconEntry.from_dict(item) for item in data["entries"]]
    pairs = []
    for pair in data.get("confusion_pairs") or []:
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise LexiconError(f"Confusion pair must have two members: {pair!r}")
        pairs.append((str(pair[0]), str(pair[1])))

    lexicon = build_lexicon(entries, pairs, version=int(data.get("version", 0)))
    logger.debug(
        f"Loaded {lexicon.entry_count} lexicon entries "
        f"({len(lexicon.phrase_rules)} phrase rules) from {path.name}"
    )
    return lexicon


@lru_cache(maxsize=None)
def get_lexicon() -> ClinicalLexicon:
    """The bundled lexicon, built once per process."""
    return load_lexicon()
