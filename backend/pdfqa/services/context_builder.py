"""Context assembly for the system prompt under a character or token budget."""
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import tiktoken

from pdfqa.models.document import RetrievedChunk, Role
from pdfqa.prompts import NO_CONTEXT_MESSAGE, assemble_system_prompt
from pdfqa.utils.text_cleaner import safe_normalize

TokenCounter = Callable[[str], int]

ELLIPSIS = "..."
CHUNK_SEPARATOR = "\n\n"
# Floor for the forcibly truncated first chunk
MIN_FORCED_BUDGET = 8


def truncate_chars(text: str, max_chars: int) -> str:
    """Truncate by characters, ending with an ellipsis."""
    if len(text) <= max_chars:
        return text
    cut = max(0, max_chars - len(ELLIPSIS))
    return text[:cut].rstrip() + ELLIPSIS


def truncate_tokens(text: str, max_tokens: int, token_counter: TokenCounter) -> str:
    """
    Truncate to the longest prefix within ``max_tokens``.

    Binary search over the prefix length keeps ``token_counter`` calls
    at O(log n).
    """
    if token_counter(text) <= max_tokens:
        return text

    lo, hi = 0, len(text)
    best = ""
    while lo <= hi:
        mid = (lo + hi) // 2
        candidate = text[:mid]
        if token_counter(candidate) <= max_tokens:
            best = candidate
            lo = mid + 1
        else:
            hi = mid - 1

    trimmed = best.rstrip()
    return trimmed + ELLIPSIS if trimmed else ELLIPSIS


def tiktoken_counter(encoding_name: str = "cl100k_base") -> TokenCounter:
    """Token counter backed by tiktoken."""
    encoder = tiktoken.get_encoding(encoding_name)
    return lambda text: len(encoder.encode(text))


@dataclass
class _PreparedChunk:
    header: str
    content: str


def _header(chunk: RetrievedChunk, include_chunk_ids: bool) -> str:
    if include_chunk_ids and chunk.id:
        return f"[Page {chunk.page_number} | id:{chunk.id}] "
    return f"[Page {chunk.page_number}] "


def build_context_block(
    chunks: Sequence[RetrievedChunk],
    *,
    max_context_chars: int = 14000,
    max_context_tokens: Optional[int] = None,
    per_chunk_chars: Optional[int] = 2000,
    per_chunk_tokens: Optional[int] = None,
    token_counter: Optional[TokenCounter] = None,
    sort_chunks: bool = True,
    assume_sorted: bool = False,
    include_chunk_ids: bool = False,
) -> str:
    """
    Assemble ranked chunks into one context block.

    Chunks are added greedily in rank order while the block stays within the
    budget (tokens when ``token_counter`` and ``max_context_tokens`` are
    given, characters otherwise). If the first chunk alone exceeds the budget
    a truncated version of it is included, so the block is never empty when
    chunks exist.

    Args:
        chunks: Retrieved chunks
        max_context_chars: Character budget for the whole block
        max_context_tokens: Token budget for the whole block
        per_chunk_chars: Character cap per chunk
        per_chunk_tokens: Token cap per chunk (needs token_counter)
        token_counter: Function returning the token count of a string
        sort_chunks: Sort by similarity descending
        assume_sorted: Caller guarantees ranked order; skip sorting
        include_chunk_ids: Add the chunk id to each header

    Returns:
        Context block text
    """
    working = list(chunks)
    if sort_chunks and not assume_sorted:
        working.sort(key=lambda c: c.similarity, reverse=True)

    prepared = []
    for chunk in working:
        content = safe_normalize(chunk.content)
        if token_counter is not None and per_chunk_tokens is not None:
            content = truncate_tokens(content, per_chunk_tokens, token_counter)
        elif per_chunk_chars is not None:
            content = truncate_chars(content, per_chunk_chars)
        prepared.append(_PreparedChunk(_header(chunk, include_chunk_ids), content))

    use_tokens = token_counter is not None and max_context_tokens is not None
    context = ""
    for item in prepared:
        piece = f"{item.header}{item.content}"
        candidate = f"{context}{CHUNK_SEPARATOR}{piece}" if context else piece
        size = token_counter(candidate) if use_tokens else len(candidate)
        budget = max_context_tokens if use_tokens else max_context_chars

        if size <= budget:
            context = candidate
            continue

        if not context:
            if use_tokens:
                available = max(MIN_FORCED_BUDGET, budget - token_counter(item.header))
                context = item.header + truncate_tokens(item.content, available, token_counter)
            else:
                available = max(MIN_FORCED_BUDGET, budget - len(item.header) - 5)
                context = item.header + truncate_chars(item.content, available)
        break

    return context


@dataclass(frozen=True)
class ContextBudget:
    """Size limits for the context block."""

    max_context_chars: int = 14000
    max_context_tokens: Optional[int] = None
    per_chunk_chars: Optional[int] = 2000
    per_chunk_tokens: Optional[int] = None
    include_chunk_ids: bool = False


def build_system_prompt(
    chunks: Sequence[RetrievedChunk],
    role: Role,
    budget: Optional[ContextBudget] = None,
    token_counter: Optional[TokenCounter] = None,
    assume_sorted: bool = False,
) -> str:
    """
    Build the full instruction payload for the LLM.

    Guardrails and role-specific instructions wrap the context block. With no
    chunks at all, a fixed "no relevant context" message is returned instead.

    Args:
        chunks: Ranked retrieved chunks
        role: Answering persona
        budget: Context size limits (defaults when omitted)
        token_counter: Optional token counter enabling token budgets
        assume_sorted: Caller guarantees chunks are ranked

    Returns:
        System prompt text
    """
    if not chunks:
        return NO_CONTEXT_MESSAGE

    budget = budget or ContextBudget()
    context = build_context_block(
        chunks,
        max_context_chars=budget.max_context_chars,
        max_context_tokens=budget.max_context_tokens,
        per_chunk_chars=budget.per_chunk_chars,
        per_chunk_tokens=budget.per_chunk_tokens,
        token_counter=token_counter,
        assume_sorted=assume_sorted,
        include_chunk_ids=budget.include_chunk_ids,
    )
    return assemble_system_prompt(role, context)
