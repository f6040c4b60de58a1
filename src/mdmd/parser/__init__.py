"""Note text codec."""

from .markdown import parse_note, parse_note_text, render_note, write_note

__all__ = ["parse_note", "parse_note_text", "render_note", "write_note"]
