"""
FastAPI application serving the ApprovalFlow agent.
Provides REST endpoints for chat, streaming chat, receipts, manager decisions and monitoring.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from approvalflow.agent import get_agent
from approvalflow.config import settings
from approvalflow.exceptions import ApprovalFlowError
from approvalflow.models import ActorKind, Identity, Receipt, RequestKind
from approvalflow.react import FinalResponse
from approvalflow.snowflake_client import EmployeeDirectory
from approvalflow.store import new_id

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

employee_directory = EmployeeDirectory(use_mock=not bool(settings.snowflake_account))

ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "invalid_arguments": status.HTTP_422_UNPROCESSABLE_ENTITY,
}

MAX_RECEIPT_BYTES = 10 * 1024 * 1024


class ChatRequest(BaseModel):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "message": "I'd like to take March 3rd through 5th off for a family trip",
                "session_id": "session_123",
            }
        }
    )

    message: str = Field(..., min_length=1, description="User's message")
    session_id: str = Field(..., description="Session identifier for conversation tracking")


class ChatResponse(BaseModel):
    response: str = Field(..., description="Agent's response")
    session_id: str
    tool_trace: list[dict] = Field(default_factory=list)
    stop_reason: str


class ReceiptUpload(BaseModel):
    filename: str
    content_type: str = "image/png"
    content_base64: str


class DecisionRequest(BaseModel):
    approve: bool
    notes: str = ""


class HealthResponse(BaseModel):
    status: str
    environment: str
    snowflake_circuit_breaker: dict
    model_circuit_breaker: dict | None = None


async def current_identity(x_employee_id: str | None = Header(default=None)) -> Identity:
    """Identity comes from the authenticated header, never from the message."""
    if not x_employee_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Employee-Id header")
    identity = await employee_directory.lookup(x_employee_id)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown employee")
    return identity


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting ApprovalFlow API")
    logger.info(f"Environment: {settings.environment}")

    try:
        await get_agent().startup()
        logger.info("Agent initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize agent: {e}")

    yield

    logger.info("Shutting down ApprovalFlow API")
    await get_agent().shutdown()
    employee_directory.close()


app = FastAPI(
    title="ApprovalFlow API",
    description="Conversational PTO and expense approvals backed by a deterministic policy engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApprovalFlowError)
async def approvalflow_error_handler(request: Request, exc: ApprovalFlowError):
    logger.warning(f"{request.url.path}: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content=exc.to_dict(),
    )


@app.get("/", tags=["Root"])
async def root():
    return {"message": "ApprovalFlow API", "version": "1.0.0", "docs": "/docs"}


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Service status and circuit breaker state."""
    breaker = getattr(get_agent().model, "circuit_breaker", None)
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        snowflake_circuit_breaker=employee_directory.get_circuit_breaker_state(),
        model_circuit_breaker=breaker.get_state() if breaker else None,
    )


@app.post("/chat", response_model=ChatResponse, tags=["Chat"])
async def chat(request: ChatRequest, identity: Identity = Depends(current_identity)):
    """
    Chat with the approval agent. Requests with the same session_id share context.

    Example:
    ```json
    {"message": "Can I take next Monday to Wednesday off?", "session_id": "alex-1"}
    ```
    """
    logger.info(f"Chat request: session={request.session_id}")
    try:
        result = await get_agent().chat(request.message, request.session_id, identity)
    except ApprovalFlowError:
        raise
    except Exception as e:
        logger.error(f"Error in /chat endpoint: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred processing your request. Please try again.",
        ) from e

    return ChatResponse(
        response=result.final_text,
        session_id=request.session_id,
        tool_trace=[t.to_dict() for t in result.tool_trace],
        stop_reason=result.stop_reason,
    )


@app.post("/chat/stream", tags=["Chat"])
async def chat_stream(request: ChatRequest, identity: Identity = Depends(current_identity)):
    """
    Stream the turn as newline-delimited JSON events.

    Draft text arrives as ``text_delta`` events and tool calls as
    ``tool_call_started``/``tool_call_finished``; the closing ``final`` event
    carries the complete, fully guarded answer and replaces the draft.
    """
    agent = get_agent()
    # Opening the session here surfaces ownership errors as a proper HTTP status.
    agent.sessions.open(request.session_id, identity.id)
    abort = asyncio.Event()

    async def events():
        try:
            async for event in agent.chat_stream(request.message, request.session_id, identity, abort):
                yield json.dumps(event.to_dict(), default=str) + "\n"
                if isinstance(event, FinalResponse):
                    break
        finally:
            abort.set()

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.post("/reset-conversation/{session_id}", tags=["Chat"])
async def reset_conversation(session_id: str, identity: Identity = Depends(current_identity)):
    agent = get_agent()
    agent.sessions.open(session_id, identity.id)
    agent.reset_conversation(session_id)
    return {"message": f"Conversation reset for session {session_id}", "session_id": session_id}


@app.post("/receipts", status_code=status.HTTP_201_CREATED, tags=["Expenses"])
async def upload_receipt(upload: ReceiptUpload, identity: Identity = Depends(current_identity)):
    """Store a receipt image; the returned id can be referenced in chat."""
    try:
        content = base64.b64decode(upload.content_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=422, detail="content_base64 is not valid base64") from e
    if not content:
        raise HTTPException(status_code=422, detail="Receipt is empty")
    if len(content) > MAX_RECEIPT_BYTES:
        raise HTTPException(status_code=413, detail="Receipt exceeds 10 MB")

    receipt = Receipt(
        id=new_id("RCT"),
        employee_id=identity.id,
        filename=upload.filename,
        content=content,
        content_type=upload.content_type,
    )
    await get_agent().store.save_receipt(receipt)
    logger.info(f"Receipt {receipt.id} uploaded by {identity.id} ({len(content)} bytes)")
    return {"receipt_id": receipt.id, "filename": receipt.filename}


@app.post("/requests/{kind}/{request_id}/decision", tags=["Approvals"])
async def record_decision(
    kind: RequestKind,
    request_id: str,
    decision: DecisionRequest,
    identity: Identity = Depends(current_identity),
):
    """Manager approves or denies a pending request."""
    result = await get_agent().lifecycle.record_manager_decision(
        kind, request_id, identity, decision.approve, decision.notes
    )
    return result.to_dict()


@app.post("/requests/{kind}/{request_id}/cancel", tags=["Approvals"])
async def cancel_request(kind: RequestKind, request_id: str, identity: Identity = Depends(current_identity)):
    result = await get_agent().lifecycle.cancel(kind, request_id, identity, actor_kind=ActorKind.HUMAN)
    return result.to_dict()


@app.get("/ready")
def ready():
    return {"status": "ready"}


@app.get("/metrics", tags=["Monitoring"])
async def metrics():
    agent = get_agent()
    return {
        "circuit_breaker": employee_directory.get_circuit_breaker_state(),
        "active_conversations": len(agent.sessions),
        "registered_tools": len(agent.registry),
        "environment": settings.environment,
    }


if __name__ == "__main__":
    uvicorn.run(
        "approvalflow.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8080)),
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
