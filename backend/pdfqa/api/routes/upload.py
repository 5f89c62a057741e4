"""Upload endpoint for document ingestion."""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from pdfqa.api.schemas import DocumentResponse, ErrorResponse, UploadResponse
from pdfqa.exceptions import ValidationError
from pdfqa.services.document_upload_service import DocumentUploadService
from pdfqa.services.vector_store import VectorStore
from pdfqa.utils.logger import logger
from pdfqa.utils.metrics import INGESTIONS

router = APIRouter()


def get_upload_service() -> DocumentUploadService:
    """Get document upload service from main app."""
    from pdfqa.main import upload_service
    if upload_service is None:
        raise HTTPException(status_code=503, detail="Upload service not initialized")
    return upload_service


def get_vector_store() -> VectorStore:
    """Get vector store from main app."""
    from pdfqa.main import vector_store
    if vector_store is None:
        raise HTTPException(status_code=503, detail="Vector store not initialized")
    return vector_store


@router.post(
    "/process-pdf",
    response_model=UploadResponse,
    responses={
        400: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def process_pdf(
    file: Optional[UploadFile] = File(None),
    upload_service: DocumentUploadService = Depends(get_upload_service),
):
    """
    Upload a PDF, chunk it, embed the chunks and store them.

    Args:
        file: PDF file to upload and process
        upload_service: Document upload service instance

    Returns:
        ``{success: true, sessionId}`` on success; ``{error, code}`` with
        400/413 on validation failure; ``{error}`` with 500 otherwise
    """
    request_id = str(uuid.uuid4())
    # one byte past the ceiling is enough for the size check to reject
    read_limit = upload_service.limits.max_file_bytes + 1
    try:
        document = await upload_service.upload_and_process_document(
            file_content=await file.read(read_limit) if file is not None else None,
            filename=file.filename if file is not None else None,
            content_type=file.content_type if file is not None else None,
            declared_size=file.size if file is not None else None,
        )
    except ValidationError as e:
        INGESTIONS.labels(outcome="rejected").inc()
        logger.info(
            f"Upload rejected ({e.code}): {e.message}",
            extra={"request_id": request_id},
        )
        return JSONResponse(status_code=e.status_code, content={"error": e.message, "code": e.code})
    except Exception as e:
        INGESTIONS.labels(outcome="error").inc()
        logger.error(
            f"Unexpected error uploading document: {str(e)}",
            exc_info=True,
            extra={"request_id": request_id},
        )
        return JSONResponse(status_code=500, content={"error": "Something went wrong"})

    INGESTIONS.labels(outcome="success").inc()
    return UploadResponse(session_id=document.session_id)


@router.get(
    "/documents/{session_id}",
    response_model=DocumentResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_document(
    session_id: str,
    vector_store: VectorStore = Depends(get_vector_store),
):
    """Return metadata of an ingested document."""
    document = await vector_store.get_document(session_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")

    return DocumentResponse(
        session_id=document.session_id,
        filename=document.filename,
        total_pages=document.total_pages,
        total_chunks=document.total_chunks,
        created_at=document.created_at,
    )
