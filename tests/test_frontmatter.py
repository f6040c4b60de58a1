"""Tests for frontmatter field ownership helpers."""

import re

import pytest

from mdmd.frontmatter import (
    CREATED_AT_FIELD,
    GIT_SHA_FIELD,
    is_valid_note_id,
    is_valid_timestamp,
    new_note_id,
    note_id,
    note_paths,
    stamp_once,
    utc_timestamp,
    with_association,
    with_note_id,
    without_associations,
)


class TestNoteIds:
    def test_new_ids_are_uuid4(self):
        first, second = new_note_id(), new_note_id()

        assert is_valid_note_id(first)
        assert first != second

    @pytest.mark.parametrize("value", [
        "not-a-uuid",
        "",
        "123e4567-e89b-12d3-a456-426614174000",  # version 1
        42,
        None,
    ])
    def test_invalid_ids_are_rejected(self, value):
        assert not is_valid_note_id(value)

    def test_note_id_strips_and_ignores_blank(self):
        assert note_id({"mdmd_id": "  abc  "}) == "abc"
        assert note_id({"mdmd_id": "   "}) is None
        assert note_id({"mdmd_id": 12}) is None
        assert note_id({}) is None


class TestPaths:
    """Association list reading and writing."""

    def test_paths_list_is_read(self):
        assert note_paths({"paths": ["/a", "/b"]}) == ["/a", "/b"]

    def test_legacy_scalar_path_is_read_as_single_entry(self):
        assert note_paths({"path": "/a"}) == ["/a"]

    def test_non_string_and_blank_entries_are_ignored(self):
        assert note_paths({"paths": ["/a", 3, "", "  ", None]}) == ["/a"]

    def test_add_association_appends(self):
        fields = {"title": "T", "paths": ["/a"]}

        updated, added = with_association(fields, "/b")

        assert added is True
        assert updated["paths"] == ["/a", "/b"]
        assert fields["paths"] == ["/a"]

    def test_add_existing_association_is_noop(self):
        fields = {"title": "T", "paths": ["/a"]}

        updated, added = with_association(fields, "/a")

        assert added is False
        assert updated == fields

    def test_legacy_path_is_migrated_on_write(self):
        updated, added = with_association({"title": "T", "path": "/a"}, "/a")

        assert added is False
        assert updated == {"title": "T", "paths": ["/a"]}

    def test_user_keys_keep_their_order(self):
        fields = {"zeta": 1, "alpha": 2, "paths": ["/a"], "middle": 3}

        updated, _ = with_association(fields, "/b")
        updated = with_note_id(updated, "id")

        assert list(updated)[:4] == ["zeta", "alpha", "paths", "middle"]

    def test_without_associations_keeps_others(self):
        fields = {"paths": ["/a", "/b", "/c"]}

        assert without_associations(fields, ["/b"])["paths"] == ["/a", "/c"]
        assert without_associations(fields, ["/a", "/b", "/c"])["paths"] == []


class TestStampedFields:
    def test_stamp_sets_missing_value(self):
        assert stamp_once({}, CREATED_AT_FIELD, "2024-01-01T00:00:00.000Z") == {
            "created_at": "2024-01-01T00:00:00.000Z"
        }

    def test_stamp_never_overwrites(self):
        fields = {"git_sha": "abc"}

        assert stamp_once(fields, GIT_SHA_FIELD, "def") == {"git_sha": "abc"}

    def test_blank_value_counts_as_missing(self):
        assert stamp_once({"git_sha": " "}, GIT_SHA_FIELD, "def") == {"git_sha": "def"}

    def test_only_stamped_fields_can_be_stamped(self):
        with pytest.raises(ValueError):
            stamp_once({}, "title", "x")


class TestTimestamps:
    def test_utc_timestamp_format(self):
        value = utc_timestamp()

        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", value)
        assert is_valid_timestamp(value)

    @pytest.mark.parametrize("value,expected", [
        ("2024-01-15T10:00:00.000Z", True),
        ("2024-01-15", True),
        ("yesterday", False),
        ("", False),
        (None, False),
        (20240115, False),
    ])
    def test_is_valid_timestamp(self, value, expected):
        assert is_valid_timestamp(value) is expected
