"""Text cleaning and normalization utilities."""
import re
import unicodedata

_QUESTION_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]+")
_CONTEXT_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]+")


def sanitize_text(text: str, max_length: int = 3000) -> str:
    """
    Sanitize user text before it reaches retrieval or the LLM.

    Removes control characters, collapses all whitespace to single spaces
    and caps the length, ending truncated text with an ellipsis.

    Args:
        text: Raw user text
        max_length: Maximum length of the returned string

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    cleaned = _QUESTION_CONTROL_CHARS.sub("", str(text))
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    if len(cleaned) > max_length:
        return cleaned[: max_length - 3].rstrip() + "..."
    return cleaned


def safe_normalize(text: str) -> str:
    """
    Normalize retrieved chunk text for the context block.

    NFKC-normalizes, strips control characters except newlines and tabs,
    collapses runs of spaces and tabs, and collapses 3+ newlines to 2.

    Args:
        text: Chunk text

    Returns:
        Normalized text
    """
    text = unicodedata.normalize("NFKC", text or "")
    text = _CONTEXT_CONTROL_CHARS.sub("", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
