"""Unit tests for projects_etl.directors."""

import pytest

from projects_etl.directors import (
    CANONICAL_DIRECTORS,
    DIRECTOR_ALIASES,
    canonicalize_director,
    is_known_director,
    load_director_aliases,
)
from projects_etl.shared import ConfigError


class TestCanonicalizeDirector:
    def test_all_caps(self):
        assert canonicalize_director("PAUL PASCUAL") == "Paul Pascual"

    def test_trailing_space_variant(self):
        assert canonicalize_director("ANCHY VERO ") == "Anchy Vero"

    def test_every_alias_targets_a_canonical_name(self):
        for variant, canonical in DIRECTOR_ALIASES.items():
            assert canonicalize_director(variant) == canonical
            assert canonical in CANONICAL_DIRECTORS

    def test_canonical_name_is_stable(self):
        for name in CANONICAL_DIRECTORS:
            assert canonicalize_director(name) == name

    def test_padded_all_caps_resolved_through_trimmed_form(self):
        assert canonicalize_director("  MARIO MONTENEGRO  ") == "Mario Montenegro"

    def test_unknown_name_trimmed_only(self):
        assert canonicalize_director("  Jane Doe ") == "Jane Doe"

    def test_lookup_is_case_sensitive(self):
        assert canonicalize_director("anchy vero") == "anchy vero"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_blank_is_none(self, raw):
        assert canonicalize_director(raw) is None

    def test_custom_table(self):
        assert canonicalize_director("A. VERO", {"A. VERO": "Anchy Vero"}) == "Anchy Vero"


class TestIsKnownDirector:
    def test_canonical(self):
        assert is_known_director("Fred Ramos")

    def test_unknown(self):
        assert not is_known_director("Jane Doe")
        assert not is_known_director(None)

    def test_alias_target_counts_as_known(self):
        assert is_known_director("Jane Doe", {"JANE DOE": "Jane Doe"})


class TestLoadDirectorAliases:
    def test_merges_with_builtin(self, tmp_path):
        p = tmp_path / "aliases.yml"
        p.write_text('aliases:\n  "A. VERO": "Anchy Vero"\n', encoding="utf-8")
        table = load_director_aliases(p)
        assert table["A. VERO"] == "Anchy Vero"
        assert table["PAUL PASCUAL"] == "Paul Pascual"

    def test_file_overrides_builtin(self, tmp_path):
        p = tmp_path / "aliases.yml"
        p.write_text('aliases:\n  "FRED RAMOS": "Frederick Ramos"\n', encoding="utf-8")
        assert load_director_aliases(p)["FRED RAMOS"] == "Frederick Ramos"

    def test_target_trimmed(self, tmp_path):
        p = tmp_path / "aliases.yml"
        p.write_text('aliases:\n  "G. URZAL": "  George Urzal "\n', encoding="utf-8")
        assert load_director_aliases(p)["G. URZAL"] == "George Urzal"

    def test_missing_mapping(self, tmp_path):
        p = tmp_path / "aliases.yml"
        p.write_text("directors: []\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="aliases"):
            load_director_aliases(p)

    def test_empty_file(self, tmp_path):
        p = tmp_path / "aliases.yml"
        p.write_text("", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_director_aliases(p)

    def test_blank_target(self, tmp_path):
        p = tmp_path / "aliases.yml"
        p.write_text('aliases:\n  "X": ""\n', encoding="utf-8")
        with pytest.raises(ConfigError, match="blank target"):
            load_director_aliases(p)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_director_aliases(tmp_path / "nope.yml")
