"""Bilingual clinical lexicon."""

from .loader import (
    BUNDLED_DATA_DIR,
    HANGUL_PARTICLE_SUFFIXES,
    ClinicalLexicon,
    LexiconEntry,
    PhraseRule,
    build_lexicon,
    fold_clinical_token,
    get_lexicon,
    load_lexicon,
    normalize_subscript_digits,
)

__all__ = [
    "BUNDLED_DATA_DIR",
    "HANGUL_PARTICLE_SUFFIXES",
    "ClinicalLexicon",
    "LexiconEntry",
    "PhraseRule",
    "build_lexicon",
    "fold_clinical_token",
    "get_lexicon",
    "load_lexicon",
    "normalize_subscript_digits",
]
