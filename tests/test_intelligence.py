"""Tests for validation, structure extraction, hashing and chunking helpers."""

from __future__ import annotations

import pytest

from context_for_clankers.config import ValidationConfig
from context_for_clankers.errors import ValidationError
from context_for_clankers.intelligence import (
    chunk_text,
    compute_importance,
    content_hash,
    extract_named_structures,
    extract_structures,
    generate_id,
    sanitize_tags,
    validate_content,
)


class TestSanitizeTags:
    def test_normalises_and_deduplicates(self):
        assert sanitize_tags(["  Tag1  ", "tag2", "TAG1", "tag2"]) == ["tag1", "tag2"]

    def test_none_is_empty(self):
        assert sanitize_tags(None) == []

    def test_reserved_tag_rejected(self):
        with pytest.raises(ValidationError):
            sanitize_tags(["System"])

    def test_invalid_characters_rejected(self):
        with pytest.raises(ValidationError):
            sanitize_tags(["has space"])

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError):
            sanitize_tags(["x" * 51])

    def test_too_many_rejected(self):
        config = ValidationConfig(max_tags_count=2)
        with pytest.raises(ValidationError):
            sanitize_tags(["a", "b", "c"], config)

    def test_duplicates_do_not_count_against_limit(self):
        config = ValidationConfig(max_tags_count=2)
        assert sanitize_tags(["a", "A", "b"], config) == ["a", "b"]


class TestValidateContent:
    def test_accepts_normal_content(self):
        assert validate_content("long enough content") == "long enough content"

    def test_too_short(self):
        with pytest.raises(ValidationError):
            validate_content("short")

    def test_whitespace_padding_does_not_count(self):
        with pytest.raises(ValidationError):
            validate_content("   tiny     ")

    def test_too_long(self):
        with pytest.raises(ValidationError):
            validate_content("x" * 101, ValidationConfig(max_content_length=100))


class TestStructures:
    def test_extracts_in_source_order(self):
        source = (
            "interface Props {}\n"
            "class Widget {}\n"
            "function render(props) {}\n"
            "const helper = () => 1;\n"
            "type Alias = string;\n"
        )
        assert extract_structures(source) == ["Props", "Widget", "render", "helper", "Alias"]

    def test_python_definitions(self):
        source = "class Engine:\n    async def run(self):\n        pass\n"
        assert extract_structures(source) == ["Engine", "run"]

    def test_named_structures(self):
        assert extract_named_structures("class Engine:\n    def run(self): ...") == ("run", "Engine")
        assert extract_named_structures("just prose here") == (None, None)


class TestHashing:
    def test_stable_64_bit(self):
        digest = content_hash("abc", "note", "")
        assert digest == content_hash("abc", "note", "")
        assert len(digest) == 16

    def test_parts_matter(self):
        assert content_hash("abc", "note") != content_hash("abc", "task")


class TestChunking:
    def test_short_text_single_chunk(self):
        chunks = chunk_text("line one\nline two")
        assert len(chunks) == 1
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 2)

    def test_line_ranges_cover_text(self):
        text = "\n".join(f"line number {i}" for i in range(1, 101))
        chunks = chunk_text(text, max_chunk_size=200)
        assert len(chunks) > 1
        assert chunks[0].start_line == 1
        assert chunks[-1].end_line == 100
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_line == prev.end_line + 1
        for chunk in chunks:
            assert len(chunk.content) <= 200

    def test_blank_text_has_no_chunks(self):
        assert chunk_text("\n\n   \n") == []


class TestImportance:
    def test_empty_is_zero(self):
        assert compute_importance("") == 0.0

    def test_range(self):
        score = compute_importance("def run():\n    # TODO: handle 42 retries\n    return 1")
        assert 0.0 < score <= 3.0

    def test_declarations_score_higher(self):
        prose = compute_importance("alpha beta gamma delta")
        code = compute_importance("class Alpha: beta gamma delta")
        assert code > prose


class TestGenerateId:
    def test_unique(self):
        assert generate_id() != generate_id()
