"""Main entry point for the Inspiration Chat API."""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from config import PORT, LOG_LEVEL, LOG_FORMAT, CORS_ORIGINS
from logger import setup_logging
from models.api import (
    ChatRequest,
    ChatResponse,
    ContentRequest,
    AnalysisResponse,
    TagsResponse,
    CategoriesResponse,
    CreateSessionRequest,
    SaveSessionRequest,
    SaveSessionResponse,
    BatchRequest,
    CreateInspirationRequest,
)
from services.upstream_client import UpstreamClient, UpstreamError, UpstreamRequestError
from services.inspiration_analyzer import InspirationAnalyzer
from services.stream_relay import StreamRelay
from services.supabase_store import SupabaseStore
from services.inspiration_service import InspirationService, SessionNotFoundError
from services.inspiration_export import export_inspirations

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)

# Initialize logging
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Construct services once and attach them to the application state."""
    logger.info("Initializing Inspiration Chat services...")

    try:
        upstream_client = UpstreamClient()
        logger.info("Initialized UpstreamClient")

        store = SupabaseStore()
        logger.info("Initialized SupabaseStore")

        analyzer = InspirationAnalyzer(upstream_client)
        app.state.analyzer = analyzer
        app.state.store = store
        app.state.relay = StreamRelay(upstream_client, message_store=store)
        app.state.inspiration_service = InspirationService(analyzer, store)

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise

    yield


# Initialize FastAPI app
app = FastAPI(
    title="Inspiration Chat",
    description="Chat with an AI companion and distill conversations into inspirations",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies

def get_store(request: Request) -> SupabaseStore:
    return request.app.state.store


def get_analyzer(request: Request) -> InspirationAnalyzer:
    return request.app.state.analyzer


def get_relay(request: Request) -> StreamRelay:
    return request.app.state.relay


def get_inspiration_service(request: Request) -> InspirationService:
    return request.app.state.inspiration_service


async def get_current_user_id(
    authorization: Optional[str] = Header(None),
    store: SupabaseStore = Depends(get_store)
) -> str:
    """Resolve the Supabase bearer token to a user id, or reject with 401."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    user_id = await run_in_threadpool(store.get_user_id, token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


async def _require_own_session(store: SupabaseStore, session_id: Optional[str], user_id: str) -> None:
    """Reject with 404 unless the optional session id names one of the user's sessions."""
    if not session_id:
        return
    try:
        owned = await run_in_threadpool(store.owns_session, session_id, user_id)
    except Exception as e:
        logger.error(f"Database error checking session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    if not owned:
        raise HTTPException(status_code=404, detail="Chat session not found")


def _upstream_http_error(e: UpstreamError) -> HTTPException:
    status_code = 502
    if isinstance(e, UpstreamRequestError) and e.error.code == "TIMEOUT_ERROR":
        status_code = 504
    return HTTPException(
        status_code=status_code,
        detail={
            "error": {
                "code": e.error.code,
                "message": e.error.message,
                "details": e.error.details
            }
        }
    )


# Health

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Inspiration Chat API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "inspiration-chat",
        "version": "1.0.0"
    }


# Chat

@app.post("/chat", response_model=ChatResponse)
async def chat_endpoint(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    relay: StreamRelay = Depends(get_relay),
    store: SupabaseStore = Depends(get_store)
) -> ChatResponse:
    """
    Non-streaming chat turn.

    The last user message and the assistant reply are stored when a
    sessionId of one of the caller's sessions is supplied.
    """
    await _require_own_session(store, request.session_id, user_id)

    try:
        response = await relay.reply(request.to_turns(), session_id=request.session_id, user_id=user_id)
        if not response.text:
            raise HTTPException(status_code=502, detail="No response from AI")
        return ChatResponse(message=response.text, usage=response.usage)

    except HTTPException:
        raise
    except UpstreamError as e:
        logger.error(f"Upstream error: {e.error.message}")
        raise _upstream_http_error(e)
    except Exception as e:
        logger.error(f"Unexpected error in chat: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.post("/chat/stream")
async def chat_stream_endpoint(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    relay: StreamRelay = Depends(get_relay),
    store: SupabaseStore = Depends(get_store)
):
    """
    Streaming chat turn as Server-Sent Events.

    Each event is ``data: {"content": "..."}``. The exchange is stored when
    the upstream stream completes and a sessionId was supplied. Upstream
    failures abort the response instead of closing it cleanly.
    """
    await _require_own_session(store, request.session_id, user_id)

    logger.info(
        f"Streaming chat: user={user_id}, session={request.session_id}, "
        f"turns={len(request.messages)}"
    )

    return StreamingResponse(
        relay.relay(request.to_turns(), session_id=request.session_id, user_id=user_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable buffering in nginx
        }
    )


# Inspiration analysis

@app.post("/inspiration/analyze", response_model=AnalysisResponse)
async def analyze_endpoint(
    request: ContentRequest,
    user_id: str = Depends(get_current_user_id),
    analyzer: InspirationAnalyzer = Depends(get_analyzer)
) -> AnalysisResponse:
    """Analyze content into title, summary, categories and tags."""
    analysis = await analyzer.analyze(request.content)
    return AnalysisResponse(**analysis.to_dict())


@app.post("/inspiration/tags", response_model=TagsResponse)
async def extract_tags_endpoint(
    request: ContentRequest,
    user_id: str = Depends(get_current_user_id),
    analyzer: InspirationAnalyzer = Depends(get_analyzer)
) -> TagsResponse:
    return TagsResponse(tags=await analyzer.extract_tags(request.content))


@app.post("/inspiration/categories", response_model=CategoriesResponse)
async def categorize_endpoint(
    request: ContentRequest,
    user_id: str = Depends(get_current_user_id),
    analyzer: InspirationAnalyzer = Depends(get_analyzer)
) -> CategoriesResponse:
    return CategoriesResponse(categories=await analyzer.categorize_content(request.content))


# Chat sessions

@app.get("/chat-sessions")
async def list_sessions_endpoint(
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        sessions = await run_in_threadpool(store.list_sessions, user_id)
    except Exception as e:
        logger.error(f"Database error listing sessions: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"sessions": sessions}


@app.post("/chat-sessions")
async def create_session_endpoint(
    request: CreateSessionRequest,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        session = await run_in_threadpool(store.create_session, user_id, request.title)
    except Exception as e:
        logger.error(f"Database error creating session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"session": session}


@app.post("/chat-sessions/{session_id}/save", response_model=SaveSessionResponse)
async def save_session_endpoint(
    session_id: str,
    request: SaveSessionRequest,
    user_id: str = Depends(get_current_user_id),
    service: InspirationService = Depends(get_inspiration_service)
) -> SaveSessionResponse:
    """Store the session's messages and distill them into a linked inspiration."""
    try:
        result = await service.save_session(
            session_id, user_id, request.to_turns(), title=request.title
        )
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat session not found")
    except Exception as e:
        logger.error(f"Failed to save session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    return SaveSessionResponse(
        success=result["success"],
        inspiration=result["inspiration"],
        messages_saved=result["messages_saved"]
    )


# Inspirations

@app.get("/inspirations")
async def list_inspirations_endpoint(
    category: Optional[str] = None,
    tag: Optional[str] = None,
    search: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        inspirations = await run_in_threadpool(
            store.list_inspirations, user_id, category, tag, search
        )
    except Exception as e:
        logger.error(f"Database error listing inspirations: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"inspirations": inspirations}


@app.get("/inspirations/categories")
async def category_counts_endpoint(
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        categories = await run_in_threadpool(store.count_categories, user_id)
    except Exception as e:
        logger.error(f"Database error counting categories: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"categories": categories}


@app.get("/inspirations/tags")
async def tag_counts_endpoint(
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        tags = await run_in_threadpool(store.count_tags, user_id)
    except Exception as e:
        logger.error(f"Database error counting tags: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"tags": tags}


@app.post("/inspirations")
async def create_inspiration_endpoint(
    request: CreateInspirationRequest,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    """Store an inspiration directly, e.g. an /inspiration/analyze result."""
    try:
        inspiration = await run_in_threadpool(
            store.insert_inspiration,
            user_id,
            request.title,
            request.content,
            request.summary,
            request.categories,
            request.tags
        )
    except Exception as e:
        logger.error(f"Database error creating inspiration: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"inspiration": inspiration}


@app.delete("/inspirations")
async def delete_inspirations_endpoint(
    ids: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    """Delete several inspirations given as ?ids=a,b,c."""
    inspiration_ids = [i.strip() for i in (ids or "").split(",") if i.strip()]
    if not inspiration_ids:
        raise HTTPException(status_code=400, detail="IDs are required")

    try:
        await run_in_threadpool(store.delete_inspirations, inspiration_ids, user_id)
    except Exception as e:
        logger.error(f"Database error deleting inspirations: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"success": True}


@app.get("/inspirations/{inspiration_id}")
async def get_inspiration_endpoint(
    inspiration_id: str,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        inspiration = await run_in_threadpool(store.get_inspiration, inspiration_id, user_id)
    except Exception as e:
        logger.error(f"Database error fetching inspiration {inspiration_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    if inspiration is None:
        raise HTTPException(status_code=404, detail="Inspiration not found")
    return {"inspiration": inspiration}


@app.put("/inspirations/{inspiration_id}")
async def update_inspiration_endpoint(
    inspiration_id: str,
    updates: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    """Update an inspiration; id, user_id and created_at in the body are ignored."""
    try:
        inspiration = await run_in_threadpool(
            store.update_inspiration, inspiration_id, user_id, updates
        )
    except Exception as e:
        logger.error(f"Database error updating inspiration {inspiration_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    if inspiration is None:
        raise HTTPException(status_code=404, detail="Inspiration not found")
    return {"inspiration": inspiration}


@app.delete("/inspirations/{inspiration_id}")
async def delete_inspiration_endpoint(
    inspiration_id: str,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        await run_in_threadpool(store.delete_inspiration, inspiration_id, user_id)
    except Exception as e:
        logger.error(f"Database error deleting inspiration {inspiration_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Database error")
    return {"success": True}


@app.post("/inspirations/batch")
async def batch_endpoint(
    request: BatchRequest,
    user_id: str = Depends(get_current_user_id),
    store: SupabaseStore = Depends(get_store),
    service: InspirationService = Depends(get_inspiration_service)
) -> Dict[str, Any]:
    """
    Apply a batch action to several inspirations.

    Actions: delete, add/remove/replace Categories, add/remove/replace Tags,
    and export (data.format: markdown, json or txt).
    """
    ids = request.inspiration_ids

    if request.action == "export":
        export_format = request.data.get("format", "markdown")
        try:
            inspirations = await run_in_threadpool(store.get_inspirations, user_id, ids)
        except Exception as e:
            logger.error(f"Database error exporting inspirations: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Database error")
        if not inspirations:
            raise HTTPException(status_code=404, detail="No inspirations found")
        try:
            return {"exportData": export_inspirations(inspirations, export_format)}
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    key = "categories" if request.action.endswith("Categories") else "tags"
    values = request.data.get(key) or []
    if not isinstance(values, list):
        raise HTTPException(status_code=400, detail=f"data.{key} must be a list")

    results = await service.apply_batch(user_id, request.action, ids, values)
    successful = sum(1 for r in results if r["success"])

    return {
        "success": True,
        "results": results,
        "summary": {
            "total": len(ids),
            "successful": successful,
            "failed": len(results) - successful
        }
    }


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Inspiration Chat API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
