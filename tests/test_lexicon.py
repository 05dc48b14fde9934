"""Tests for the clinical lexicon loader."""

import pytest

from handoffguard.exceptions import LexiconError
from handoffguard.lexicon import LexiconEntry, build_lexicon, fold_clinical_token, get_lexicon, load_lexicon


def test_fold_clinical_token_variants_share_key():
    assert fold_clinical_token("SpO₂") == "spo2"
    assert fold_clinical_token("S.p.O 2") == "spo2"
    assert fold_clinical_token("I/O") == "io"


def test_bundled_lexicon_lookup(lexicon):
    assert lexicon.entry_count > 0
    assert lexicon.lookup("SpO2") == "산소포화도"
    assert lexicon.lookup("spo₂") == "산소포화도"
    assert lexicon.lookup("스포투") == "산소포화도"
    assert lexicon.lookup("비에스티") == "혈당"
    assert lexicon.lookup("없는단어") is None


def test_confusion_pairs_are_order_independent(lexicon):
    assert lexicon.has_confusion_pair("HR", "RR")
    assert lexicon.has_confusion_pair("RR", "HR")
    assert not lexicon.has_confusion_pair("HR", "BP")


def test_known_abbreviations(lexicon):
    assert lexicon.is_known_abbreviation("SpO2")
    assert lexicon.is_known_abbreviation("q4h")
    assert not lexicon.is_known_abbreviation("XYZQ")


def test_confusion_pair_members_are_known(lexicon):
    for token in ("DC", "D/C", "PE", "PEA"):
        assert lexicon.is_known_abbreviation(token)


def test_get_lexicon_is_cached():
    assert get_lexicon() is get_lexicon()


def test_phrase_rules_longest_first():
    lexicon = build_lexicon([
        LexiconEntry(term="BS", meaning="혈당", synonyms=["blood sugar"]),
        LexiconEntry(term="FBS", meaning="공복혈당", synonyms=["fasting blood sugar"]),
    ])
    priorities = [rule.priority for rule in lexicon.phrase_rules]
    assert priorities == sorted(priorities, reverse=True)
    assert lexicon.phrase_rules[0].canonical == "공복혈당"

    text, changed = lexicon.phrase_rules[0].apply("fasting blood sugar 90")
    assert changed
    assert text == "공복혈당 90"


def test_first_entry_wins_for_duplicate_variant():
    lexicon = build_lexicon([
        LexiconEntry(term="DC", meaning="퇴원"),
        LexiconEntry(term="dc", meaning="중단"),
    ])
    assert lexicon.lookup("DC") == "퇴원"
    assert lexicon.entry_count == 2


def test_load_lexicon_missing_file(tmp_path):
    with pytest.raises(LexiconError):
        load_lexicon(tmp_path / "missing.yaml")


def test_load_lexicon_rejects_bad_shape(tmp_path):
    path = tmp_path / "lexicon.yaml"
    path.write_text("entries: 3\n", encoding="utf-8")
    with pytest.raises(LexiconError):
        load_lexicon(path)


def test_load_lexicon_rejects_incomplete_entry(tmp_path):
    path = tmp_path / "lexicon.yaml"
    path.write_text("entries:\n  - term: BST\n", encoding="utf-8")
    with pytest.raises(LexiconError):
        load_lexicon(path)


def test_load_lexicon_rejects_bad_confusion_pair(tmp_path):
    path = tmp_path / "lexicon.yaml"
    path.write_text(
        "confusion_pairs:\n  - [HR]\nentries:\n  - term: HR\n    meaning: 맥박\n",
        encoding="utf-8",
    )
    with pytest.raises(LexiconError):
        load_lexicon(path)


def test_load_custom_lexicon(tmp_path):
    path = tmp_path / "lexicon.yaml"
    path.write_text(
        "version: 7\n"
        "confusion_pairs:\n  - [HR, RR]\n"
        "entries:\n"
        "  - term: HR\n    meaning: 맥박\n    pronunciations: [에이치알]\n",
        encoding="utf-8",
    )
    lexicon = load_lexicon(path)
    assert lexicon.version == 7
    assert lexicon.lookup("에이치알") == "맥박"
    assert lexicon.has_confusion_pair("RR", "HR")
