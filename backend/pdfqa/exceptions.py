"""Custom exception classes for ingestion, retrieval and generation."""


class PDFQAError(Exception):
    """Base exception for the PDF question answering pipeline."""
    pass


class ValidationError(PDFQAError):
    """Raised when an uploaded document fails validation.

    Carries a stable machine-readable ``code`` and the HTTP status the
    failure maps to. Messages are safe to show to the user verbatim.
    """

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str = None, status_code: int = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class NoFileError(ValidationError):
    """Raised when the upload request carries no file."""

    code = "NO_FILE"


class InvalidMediaTypeError(ValidationError):
    """Raised when the declared media type is not a PDF type."""

    code = "INVALID_MIME"


class FileSizeExceededError(ValidationError):
    """Raised when file size exceeds the maximum allowed."""

    code = "FILE_TOO_LARGE"
    status_code = 413


class InvalidHeaderError(ValidationError):
    """Raised when the file does not start with the PDF magic bytes."""

    code = "INVALID_PDF_HEADER"


class PDFParseError(ValidationError):
    """Raised when the PDF cannot be parsed."""

    code = "PDF_PARSE_ERROR"


class TooFewPagesError(ValidationError):
    """Raised when the document has fewer pages than allowed."""

    code = "PDF_TOO_FEW_PAGES"


class PageLimitExceededError(ValidationError):
    """Raised when document exceeds maximum page limit."""

    code = "PDF_TOO_MANY_PAGES"
    status_code = 413


class DocumentEmptyError(ValidationError):
    """Raised when a document has no extractable text (image-only PDFs)."""

    code = "PDF_NO_EXTRACTABLE_TEXT"


class ChunkLimitExceededError(ValidationError):
    """Raised when document would create too many chunks."""

    code = "TOO_MANY_CHUNKS"
    status_code = 413


class UpstreamError(PDFQAError):
    """Base for failures of the embedding service, vector store or LLM."""
    pass


class UpstreamTimeoutError(UpstreamError):
    """Raised when an upstream call exceeds its time budget or is aborted."""
    pass


class EmbeddingTimeoutError(UpstreamTimeoutError):
    """Raised when the query embedding call times out."""
    pass


class EmbeddingCancelledError(UpstreamTimeoutError):
    """Raised when the caller aborts the query embedding call."""
    pass


class VectorSearchTimeoutError(UpstreamTimeoutError):
    """Raised when a similarity search exceeds its time budget."""
    pass


class UpstreamFailureError(UpstreamError):
    """Raised when an upstream service errors or returns a bad payload."""
    pass


class EmbeddingError(UpstreamFailureError):
    """Raised when embedding generation fails."""
    pass


class VectorSearchError(UpstreamFailureError):
    """Raised when the similarity search call fails."""
    pass


class MalformedResponseError(UpstreamFailureError):
    """Raised when an upstream payload has an unrecognized shape."""
    pass


class LLMError(UpstreamFailureError):
    """Raised when the LLM provider fails."""
    pass


class DataIntegrityError(PDFQAError):
    """Raised when chunk, embedding or vector bookkeeping is inconsistent."""
    pass


class DimensionMismatchError(DataIntegrityError):
    """Raised when embedding vectors do not share one dimensionality."""
    pass


class BatchSizeMismatchError(DataIntegrityError):
    """Raised when the number of vectors differs from the number of inputs."""
    pass


class StorageError(PDFQAError):
    """Raised when storing document chunks fails."""
    pass
