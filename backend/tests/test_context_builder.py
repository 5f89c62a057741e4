"""Tests for context assembly and prompt building."""
from unittest.mock import Mock, patch

from conftest import retrieved
from pdfqa.models.document import Role
from pdfqa.prompts import NO_CONTEXT_MESSAGE, REFUSAL_PHRASE, temperature_for
from pdfqa.services.context_builder import (
    ContextBudget,
    build_context_block,
    build_system_prompt,
    tiktoken_counter,
    truncate_chars,
    truncate_tokens,
)
from pdfqa.utils.text_cleaner import safe_normalize, sanitize_text


def word_counter(text: str) -> int:
    return len(text.split())


class TestTruncation:
    """Tests for the truncation helpers."""

    def test_truncate_chars(self):
        assert truncate_chars("short", 10) == "short"
        result = truncate_chars("a" * 50, 10)
        assert len(result) == 10
        assert result.endswith("...")

    def test_truncate_tokens(self):
        text = " ".join(f"w{i}" for i in range(50))
        result = truncate_tokens(text, 10, word_counter)
        assert result.endswith("...")
        assert word_counter(result) <= 10

    def test_truncate_tokens_within_budget(self):
        assert truncate_tokens("one two", 5, word_counter) == "one two"


class TestBuildContextBlock:
    """Tests for build_context_block."""

    def test_ranked_with_page_headers(self):
        chunks = [
            retrieved("a", 0.3, "low ranked", page=2),
            retrieved("b", 0.9, "top ranked", page=5),
        ]
        context = build_context_block(chunks)
        assert context == "[Page 5] top ranked\n\n[Page 2] low ranked"

    def test_assume_sorted_keeps_order(self):
        chunks = [retrieved("a", 0.3, "first"), retrieved("b", 0.9, "second")]
        context = build_context_block(chunks, assume_sorted=True)
        assert context.index("first") < context.index("second")

    def test_character_budget_respected(self):
        chunks = [retrieved(str(i), 1 - i / 100, "x" * 300) for i in range(20)]
        context = build_context_block(chunks, max_context_chars=1000)
        assert 0 < len(context) <= 1000
        assert context.count("[Page 1]") == 3

    def test_first_chunk_forcibly_truncated(self):
        chunks = [retrieved("a", 0.9, "y" * 500)]
        context = build_context_block(chunks, max_context_chars=100, per_chunk_chars=None)
        assert context.startswith("[Page 1] ")
        assert context.endswith("...")
        assert len(context) <= 100

    def test_per_chunk_cap(self):
        chunks = [retrieved("a", 0.9, "z" * 3000)]
        context = build_context_block(chunks, per_chunk_chars=2000)
        assert len(context) == len("[Page 1] ") + 2000

    def test_token_budget(self):
        chunks = [retrieved(str(i), 1 - i / 100, "word " * 40) for i in range(10)]
        context = build_context_block(chunks, max_context_tokens=100, token_counter=word_counter)
        assert word_counter(context) <= 100
        assert context.count("[Page") == 2

    def test_token_budget_forced_first_chunk(self):
        chunks = [retrieved("a", 0.9, "word " * 200)]
        context = build_context_block(chunks, max_context_tokens=20, token_counter=word_counter)
        assert context.startswith("[Page 1] ")
        assert context.endswith("...")

    def test_chunk_ids_in_header(self):
        context = build_context_block([retrieved("abc", 0.9, "text")], include_chunk_ids=True)
        assert context.startswith("[Page 1 | id:abc] ")

    def test_content_normalized(self):
        chunks = [retrieved("a", 0.9, "ﬁrst\x00 line   here\n\n\n\nnext")]
        context = build_context_block(chunks)
        assert context == "[Page 1] first line here\n\nnext"

    def test_tiktoken_counter(self):
        encoder = Mock()
        encoder.encode = Mock(side_effect=lambda text: text.split())
        with patch("pdfqa.services.context_builder.tiktoken.get_encoding", return_value=encoder) as get_encoding:
            counter = tiktoken_counter("cl100k_base")
        get_encoding.assert_called_once_with("cl100k_base")
        assert counter("hello big world") == 3


class TestBuildSystemPrompt:
    """Tests for build_system_prompt."""

    def test_empty_chunks(self):
        assert build_system_prompt([], Role.STRICT_QA) == NO_CONTEXT_MESSAGE

    def test_contains_guardrails_and_context(self):
        prompt = build_system_prompt(
            [retrieved("a", 0.9, "Revenue grew 12%", page=3)],
            Role.CONCISE_HR,
            budget=ContextBudget(max_context_chars=500),
        )
        assert REFUSAL_PHRASE in prompt
        assert "Role instructions:" in prompt
        assert "Context (BEGIN):\n[Page 3] Revenue grew 12%\n(END)" in prompt

    def test_role_temperatures(self):
        assert temperature_for(Role.STRICT_QA) == 0.2
        assert temperature_for(Role.STORYTELLER) == 0.8
        assert temperature_for(Role.STRICT_QA) < temperature_for(Role.FRIEND)


class TestSanitizeText:
    """Tests for question sanitization."""

    def test_control_chars_and_whitespace(self):
        assert sanitize_text("  What\x00 is\n\tthe   total? ") == "What is the total?"

    def test_capped(self):
        result = sanitize_text("q" * 5000, 3000)
        assert len(result) == 3000
        assert result.endswith("...")

    def test_safe_normalize_keeps_paragraphs(self):
        assert safe_normalize("a\x7f b\n\n\n\nc") == "a b\n\nc"
