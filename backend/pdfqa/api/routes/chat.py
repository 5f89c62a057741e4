"""Chat endpoint: grounded question answering with a streamed response."""
import asyncio
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from pdfqa.api.schemas import ChatRequest, ErrorResponse, InsufficientContextResponse
from pdfqa.exceptions import EmbeddingCancelledError, PDFQAError
from pdfqa.services.response_streamer import InsufficientContext, ResponseStreamer
from pdfqa.services.retrieval_service import RetrievalService
from pdfqa.utils.logger import logger
from pdfqa.utils.metrics import CHAT_REQUESTS
from pdfqa.utils.text_cleaner import sanitize_text
from pdfqa.utils.timeouts import cancel_and_wait

router = APIRouter()

MAX_QUESTION_CHARS = 3000
DISCONNECT_POLL_SECONDS = 0.1
RETRIEVAL_FAILED_MESSAGE = "Failed to retrieve relevant content from PDF."


def get_retrieval_service() -> RetrievalService:
    """Get retrieval service from main app."""
    from pdfqa.main import retrieval_service
    if retrieval_service is None:
        raise HTTPException(status_code=503, detail="Retrieval service not initialized")
    return retrieval_service


def get_response_streamer() -> ResponseStreamer:
    """Get response streamer from main app."""
    from pdfqa.main import response_streamer
    if response_streamer is None:
        raise HTTPException(status_code=503, detail="Response streamer not initialized")
    return response_streamer


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.post(
    "/chat",
    responses={
        200: {"model": InsufficientContextResponse},
        400: {"model": ErrorResponse},
        499: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def chat(
    body: ChatRequest,
    request: Request,
    retrieval_service: RetrievalService = Depends(get_retrieval_service),
    response_streamer: ResponseStreamer = Depends(get_response_streamer),
):
    """
    Answer the last user message from the session's document.

    Returns ``INSUFFICIENT_CONTEXT`` JSON when evidence is weak; otherwise a
    plain-text stream: sources JSON, ``\\n---\\n``, then the generated answer.

    Args:
        body: Conversation, session id, role and the ungrounded opt-in
        request: Incoming request, watched for client disconnects
        retrieval_service: Retrieval engine
        response_streamer: Gate and stream builder

    Returns:
        JSONResponse or StreamingResponse
    """
    request_id = str(uuid.uuid4())
    headers = {"X-Request-Id": request_id, "Cache-Control": "no-store, private"}

    question = sanitize_text(body.question, MAX_QUESTION_CHARS)
    if not question:
        return JSONResponse(status_code=400, content={"error": "Question cannot be empty"}, headers=headers)

    cancel_event = asyncio.Event()
    watcher = asyncio.ensure_future(_watch_disconnect(request, cancel_event))
    try:
        outcome = await retrieval_service.retrieve(
            question, body.session_id, cancel_event=cancel_event, request_id=request_id
        )
    except EmbeddingCancelledError:
        CHAT_REQUESTS.labels(outcome="cancelled").inc()
        logger.info("Client disconnected during retrieval", extra={"request_id": request_id})
        return JSONResponse(status_code=499, content={"error": "Request cancelled"}, headers=headers)
    except PDFQAError as e:
        CHAT_REQUESTS.labels(outcome="error").inc()
        logger.error(
            f"Chunk retrieval failed: {str(e)}",
            exc_info=True,
            extra={"request_id": request_id, "session_id": body.session_id},
        )
        return JSONResponse(
            status_code=500,
            content={"error": RETRIEVAL_FAILED_MESSAGE, "requestId": request_id},
            headers=headers,
        )
    finally:
        await cancel_and_wait(watcher)

    result = response_streamer.respond(
        outcome,
        question,
        body.role,
        allow_ungrounded=body.allow_ungrounded,
        request_id=request_id,
    )

    if isinstance(result, InsufficientContext):
        CHAT_REQUESTS.labels(outcome="insufficient_context").inc()
        payload = InsufficientContextResponse(**result.to_dict())
        return JSONResponse(
            status_code=200,
            content=payload.model_dump(by_alias=True),
            headers=headers,
        )

    CHAT_REQUESTS.labels(outcome="streamed").inc()
    return StreamingResponse(
        result,
        media_type="text/plain; charset=utf-8",
        headers=headers,
        background=BackgroundTask(result.aclose),
    )
