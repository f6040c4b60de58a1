"""Tests for markdown/frontmatter parsing in mdmd.parser."""

from pathlib import Path

import pytest

from mdmd.errors import ErrorCode, ParseError
from mdmd.parser import parse_note, parse_note_text, render_note, write_note


class TestParseNoteText:
    """Splitting note text into frontmatter and body."""

    def test_text_without_frontmatter_is_all_body(self):
        fields, body = parse_note_text("# Heading\n\nJust text.\n")

        assert fields == {}
        assert body == "# Heading\n\nJust text.\n"

    def test_frontmatter_and_body_are_split(self):
        text = "---\ntitle: Idea\ntags: [a, b]\n---\nBody line\n"

        fields, body = parse_note_text(text)

        assert fields == {"title": "Idea", "tags": ["a", "b"]}
        assert body == "Body line\n"

    def test_empty_block_yields_empty_mapping(self):
        fields, body = parse_note_text("---\n---\nBody")

        assert fields == {}
        assert body == "Body"

    def test_crlf_delimiters_are_accepted(self):
        fields, body = parse_note_text("---\r\ntitle: Idea\r\n---\r\nBody\r\n")

        assert fields == {"title": "Idea"}
        assert body == "Body\r\n"

    def test_later_delimiters_stay_in_body(self):
        text = "---\na: 1\n---\nIntro\n---\nNot frontmatter\n"

        fields, body = parse_note_text(text)

        assert fields == {"a": 1}
        assert body == "Intro\n---\nNot frontmatter\n"

    def test_timestamps_stay_strings(self):
        text = "---\ncreated_at: 2024-01-15T10:00:00.000Z\ncreated: 2024-01-15\n---\n"

        fields, _ = parse_note_text(text)

        assert fields["created_at"] == "2024-01-15T10:00:00.000Z"
        assert fields["created"] == "2024-01-15"

    def test_invalid_yaml_raises_parse_error(self):
        with pytest.raises(ParseError) as exc_info:
            parse_note_text("---\ntitle: [unclosed\n---\nBody\n", path="inbox/bad.md")

        assert exc_info.value.code == ErrorCode.PARSE_ERROR
        assert "inbox/bad.md" in exc_info.value.message

    def test_non_mapping_frontmatter_raises_parse_error(self):
        with pytest.raises(ParseError, match="expected a YAML mapping"):
            parse_note_text("---\n- one\n- two\n---\n")


class TestRenderNote:
    """Writing frontmatter back out."""

    def test_key_order_is_preserved(self):
        text = render_note({"title": "Idea", "mdmd_id": "abc", "paths": ["/w"]}, "Body\n")

        assert text == "---\ntitle: Idea\nmdmd_id: abc\npaths:\n- /w\n---\nBody\n"

    def test_empty_fields_render_empty_block(self):
        assert render_note({}, "Body\n") == "---\n---\nBody\n"

    def test_render_then_parse_preserves_values(self):
        fields = {
            "title": "Ünïcode",
            "created_at": "2024-01-15T10:00:00.000Z",
            "count": 3,
            "nested": {"k": [1, 2]},
        }

        parsed, body = parse_note_text(render_note(fields, "\n# Heading\n"))

        assert parsed == fields
        assert list(parsed) == list(fields)
        assert body == "\n# Heading\n"

    def test_body_is_untouched_when_frontmatter_changes(self):
        original = "---\ntitle: A\n---\n\n  indented\n\ttabbed\n\n"
        fields, body = parse_note_text(original)
        fields["paths"] = ["/w"]

        _, new_body = parse_note_text(render_note(fields, body))

        assert new_body == "\n  indented\n\ttabbed\n\n"

    def test_non_string_keys_keep_their_type(self):
        fields, body = parse_note_text("---\n2024: recap\ntrue: yes-key\ntitle: A\n---\nBody\n")

        assert fields == {2024: "recap", True: "yes-key", "title": "A"}

        fields["paths"] = ["/w"]
        text = render_note(fields, body)

        assert "\n2024: recap\n" in text
        assert "'2024'" not in text
        reparsed, _ = parse_note_text(text)
        assert reparsed == {2024: "recap", True: "yes-key", "title": "A", "paths": ["/w"]}


class TestNoteFiles:
    """Reading and writing note files."""

    def test_write_then_parse(self, tmp_path: Path):
        note = tmp_path / "note.md"

        write_note(note, {"title": "Idea"}, "Body\n")

        assert parse_note(note) == ({"title": "Idea"}, "Body\n")

    def test_non_utf8_file_raises_parse_error(self, tmp_path: Path):
        note = tmp_path / "binary.md"
        note.write_bytes(b"\xff\xfe\x00garbage")

        with pytest.raises(ParseError, match="not valid UTF-8"):
            parse_note(note)
