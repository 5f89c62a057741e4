"""Prometheus metrics for ingestion, retrieval and streaming."""
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

INGESTIONS = Counter(
    "pdfqa_ingestions_total",
    "Document ingestion attempts by outcome",
    ["outcome"],
)

CHAT_REQUESTS = Counter(
    "pdfqa_chat_requests_total",
    "Chat requests by outcome (streamed, insufficient_context, error)",
    ["outcome"],
)

RETRIEVAL_TIER = Counter(
    "pdfqa_retrieval_tier_total",
    "Which retrieval tier produced the returned chunk set",
    ["tier"],
)

TOP_SIMILARITY = Histogram(
    "pdfqa_retrieval_top_similarity",
    "Top similarity of the returned chunk set",
    buckets=(0.05, 0.1, 0.2, 0.25, 0.3, 0.35, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

EMBEDDING_RETRIES = Counter(
    "pdfqa_embedding_batch_retries_total",
    "Retried embedding batch calls",
)

STREAM_ERRORS = Counter(
    "pdfqa_stream_errors_total",
    "Streams terminated with the in-band error marker",
)


def metrics_response() -> Response:
    """Render the default registry in the Prometheus text format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
