"""Pytest configuration and fixtures."""
from types import SimpleNamespace
from typing import List, Optional

import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from pdfqa.models.document import RetrievedChunk
from pdfqa.services.vector_store import VectorStore


def _escape_pdf_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_pdf(pages: List[str]) -> bytes:
    """Build a minimal valid PDF with one line of Helvetica text per page."""
    page_count = len(pages)
    font_num = 3 + 2 * page_count
    page_nums = [3 + 2 * i for i in range(page_count)]

    objects = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: (
            "<< /Type /Pages /Kids [%s] /Count %d >>"
            % (" ".join(f"{n} 0 R" for n in page_nums), page_count)
        ).encode("latin-1"),
    }
    for page_num, text in zip(page_nums, pages):
        stream = f"BT /F1 12 Tf 72 720 Td ({_escape_pdf_text(text)}) Tj ET".encode("latin-1")
        objects[page_num] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 {font_num} 0 R >> >> /Contents {page_num + 1} 0 R >>"
        ).encode("latin-1")
        objects[page_num + 1] = (
            b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"
        )
    objects[font_num] = b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>"

    out = bytearray(b"%PDF-1.4\n")
    offsets = {}
    for num in sorted(objects):
        offsets[num] = len(out)
        out += b"%d 0 obj\n" % num + objects[num] + b"\nendobj\n"

    xref_offset = len(out)
    size = max(objects) + 1
    out += b"xref\n0 %d\n" % size
    out += b"0000000000 65535 f \n"
    for num in range(1, size):
        out += b"%010d 00000 n \n" % offsets[num]
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (size, xref_offset)
    return bytes(out)


class FakeEmbeddingBackend:
    """Feature-extraction backend returning deterministic vectors."""

    def __init__(self, dimension: int = 4, fail_times: int = 0, payloads: Optional[list] = None):
        self.dimension = dimension
        self.fail_times = fail_times
        self.payloads = list(payloads or [])
        self.calls = []

    def vector_for(self, text: str) -> List[float]:
        seed = float(sum(ord(c) for c in text) % 97 + 1)
        return [seed] + [1.0] * (self.dimension - 1)

    async def feature_extraction(self, inputs):
        self.calls.append(inputs)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("embedding service unavailable")
        if self.payloads:
            return self.payloads.pop(0)
        if isinstance(inputs, str):
            return self.vector_for(inputs)
        return [self.vector_for(text) for text in inputs]


def completion_chunk(text: Optional[str]):
    """Object shaped like an OpenAI streaming chunk."""
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeCompletionStream:
    """Async-iterable provider stream that can fail after some deltas."""

    def __init__(self, pieces: List[str], error: Optional[Exception] = None):
        self.pieces = pieces
        self.error = error
        self.close_calls = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for piece in self.pieces:
            yield completion_chunk(piece)
        if self.error is not None:
            raise self.error

    async def close(self):
        self.close_calls += 1


def retrieved(chunk_id: str, similarity: float, content: str = "Some content", page: int = 1) -> RetrievedChunk:
    return RetrievedChunk(id=chunk_id, content=content, page_number=page, similarity=similarity)


@pytest.fixture
def sample_pdf_content():
    """A two-page PDF with enough text to pass validation."""
    return make_pdf([
        "Quarterly report for the northern region covering sales and hiring.",
        "Revenue grew twelve percent while operating costs stayed flat overall.",
    ])


@pytest.fixture
def fake_backend():
    return FakeEmbeddingBackend()


@pytest_asyncio.fixture
async def memory_store():
    """Vector store over an in-memory Qdrant client."""
    store = VectorStore(AsyncQdrantClient(location=":memory:"), collection_name="test_chunks", batch_size=2)
    yield store
    await store.close()
