"""Tests for medical identifier extraction."""

from encounterscope.pipeline.identifiers import (
    canonical_identifier_type,
    extract_identifiers,
    merge_identifiers,
    normalize_identifier_value,
)


class TestNormalization:
    """Tests for identifier normalization helpers."""

    def test_value_normalization(self):
        """Whitespace, hyphens and underscores are removed and case folded."""
        assert normalize_identifier_value("AB-12 34_x") == "ab1234x"

    def test_type_aliases(self):
        """Common spellings map to canonical types."""
        assert canonical_identifier_type("Medical Record Number") == "MRN"
        assert canonical_identifier_type("medicare") == "MEDICARE"
        assert canonical_identifier_type(None) == "OTHER"
        assert canonical_identifier_type("hospital badge") == "HOSPITAL_BADGE"


class TestExtractIdentifiers:
    """Tests for extract_identifiers."""

    def test_both_naming_conventions(self):
        """snake_case and camelCase keys are accepted."""
        identifiers = extract_identifiers([
            {"identifier_type": "MRN", "value": "MRN-00123"},
            {"identifierType": "medicare", "identifierValue": "2123 45670 1"},
        ])

        assert [i.identifier_type for i in identifiers] == ["MRN", "MEDICARE"]
        assert identifiers[1].normalized_value == "2123456701"
        assert identifiers[1].format_valid

    def test_invalid_format_kept_and_flagged(self):
        """A failed format check is recorded, not dropped."""
        identifiers = extract_identifiers([{"type": "medicare", "value": "12"}])

        assert len(identifiers) == 1
        assert not identifiers[0].format_valid

    def test_duplicates_removed(self):
        """Same type and normalised value appear once."""
        identifiers = extract_identifiers([
            {"type": "MRN", "value": "ab-123"},
            {"type": "mrn", "value": "AB123"},
        ])

        assert len(identifiers) == 1
        assert identifiers[0].value == "ab-123"

    def test_items_without_value_skipped(self):
        """Entries without a value and non-dict entries are ignored."""
        assert extract_identifiers([{"type": "MRN"}, "MRN 123", None]) == []
        assert extract_identifiers(None) == []

    def test_merge_across_groups(self):
        """Merging keeps first-seen order across pendings."""
        first = extract_identifiers([{"type": "MRN", "value": "A1234"}])
        second = extract_identifiers([
            {"type": "MRN", "value": "a-1234"},
            {"type": "DVA", "value": "NX123456"},
        ])

        merged = merge_identifiers(first, second)

        assert [i.normalized_value for i in merged] == ["a1234", "nx123456"]
