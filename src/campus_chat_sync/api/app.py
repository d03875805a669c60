"""
Presentation Bridge

HTTP surface a UI process uses to render the Conversation Store and to
issue user intents (open, send, mark read, foreground/background) to the
Sync Coordinator.

Key Features:
- Read-only views over the store, badges and notices
- Intents routed through the coordinator, the store's only writer
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Collaborator failures never surface as server errors; they are mapped to
status codes and transient notices.
"""

import os
from contextlib import asynccontextmanager
from typing import List, NoReturn, Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..collaborators.memory import (
    InMemoryBackend,
    InMemoryIdentityProvider,
    RecordingNotificationDispatcher,
)
from ..config import Settings, configure_logging
from ..domain.models import Conversation, Message, MessageKind, Notification
from ..domain.results import Err, ErrorKind
from ..metrics import CUSTOM_REGISTRY
from ..sync.coordinator import AppState, SyncCoordinator
from ..sync.notices import Notice

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total unhandled request errors", registry=CUSTOM_REGISTRY)

logger = get_logger()


class MessageCreate(BaseModel):
    """Defines the structure for message send requests"""
    content: str
    kind: MessageKind = MessageKind.TEXT
    reply_to_id: Optional[UUID] = None


class ConversationCreate(BaseModel):
    """Buyer side request to contact a seller about a product"""
    seller_id: UUID
    product_id: UUID


class AppStateUpdate(BaseModel):
    state: AppState


class BadgesResponse(BaseModel):
    unread_conversations: int
    unread_notifications: int


def get_coordinator(request: Request) -> SyncCoordinator:
    """Returns the coordinator the app was built with"""
    return request.app.state.coordinator


def _raise_for(error: Err) -> NoReturn:
    if error.kind is ErrorKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail=error.reason)
    if error.kind is ErrorKind.REJECTED:
        raise HTTPException(status_code=400, detail=error.reason)
    raise HTTPException(status_code=503, detail=error.reason)


router = APIRouter()


@router.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    include_archived: bool = True,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> List[Conversation]:
    """Conversations ordered by latest activity"""
    return coordinator.store.list_conversations(include_archived=include_archived)


@router.post("/conversations", response_model=Conversation)
async def start_conversation(
    request: ConversationCreate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Conversation:
    """Gets or creates the conversation with a seller about a product"""
    result = await coordinator.start_conversation(request.seller_id, request.product_id)
    if isinstance(result, Err):
        _raise_for(result)
    return result.value


@router.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Conversation:
    """Retrieves a conversation held by the store"""
    conversation = coordinator.store.get_conversation(conversation_id)
    if conversation is None:
        logger.warning("conversation_not_found", conversation_id=str(conversation_id))
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def list_messages(
    conversation_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> List[Message]:
    """Messages held for a conversation, oldest first"""
    return coordinator.store.list_messages(conversation_id)


@router.post("/conversations/{conversation_id}/open", response_model=Conversation)
async def open_conversation(
    conversation_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Conversation:
    """Starts following a conversation and loads its history"""
    result = await coordinator.open_conversation(conversation_id)
    if isinstance(result, Err):
        _raise_for(result)
    return result.value


@router.post("/conversations/{conversation_id}/close", status_code=204)
async def close_conversation(
    conversation_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Response:
    coordinator.close_conversation(conversation_id)
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/messages", response_model=Message)
async def send_message(
    conversation_id: UUID,
    message: MessageCreate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Message:
    """
    Sends a message. On failure the response carries the content so the
    composer can restore it.
    """
    outcome = await coordinator.send_message(
        conversation_id, message.content, kind=message.kind, reply_to_id=message.reply_to_id
    )
    if not outcome.ok:
        status_code = 400 if outcome.error.kind is ErrorKind.REJECTED else 502
        raise HTTPException(
            status_code=status_code,
            detail={"error": outcome.error.reason, "restored_content": outcome.restored_content},
        )
    return outcome.message


@router.post("/conversations/{conversation_id}/read", status_code=204)
async def mark_conversation_read(
    conversation_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Response:
    result = await coordinator.mark_conversation_read(conversation_id)
    if isinstance(result, Err):
        _raise_for(result)
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/archive", response_model=Conversation)
async def archive_conversation(
    conversation_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Conversation:
    result = await coordinator.archive_conversation(conversation_id)
    if isinstance(result, Err):
        _raise_for(result)
    return result.value


@router.put("/app-state", status_code=204)
async def set_app_state(
    update: AppStateUpdate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Response:
    """Reports a foreground/background transition of the UI process"""
    await coordinator.set_app_state(update.state)
    return Response(status_code=204)


@router.get("/badges", response_model=BadgesResponse)
async def get_badges(coordinator: SyncCoordinator = Depends(get_coordinator)) -> BadgesResponse:
    badges = coordinator.read_state.badges()
    return BadgesResponse(
        unread_conversations=badges.unread_conversations,
        unread_notifications=badges.unread_notifications,
    )


@router.get("/notifications", response_model=List[Notification])
async def list_notifications(coordinator: SyncCoordinator = Depends(get_coordinator)) -> List[Notification]:
    return coordinator.notifications.list()


@router.post("/notifications/read-all", status_code=204)
async def mark_all_notifications_read(coordinator: SyncCoordinator = Depends(get_coordinator)) -> Response:
    result = await coordinator.mark_all_notifications_read()
    if isinstance(result, Err):
        _raise_for(result)
    return Response(status_code=204)


@router.post("/notifications/{notification_id}/read", status_code=204)
async def mark_notification_read(
    notification_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Response:
    result = await coordinator.mark_notification_read(notification_id)
    if isinstance(result, Err):
        _raise_for(result)
    return Response(status_code=204)


@router.get("/notices", response_model=List[Notice])
async def list_notices(coordinator: SyncCoordinator = Depends(get_coordinator)) -> List[Notice]:
    return coordinator.notices.list()


@router.delete("/notices/{notice_id}", status_code=204)
async def dismiss_notice(
    notice_id: UUID,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> Response:
    if not coordinator.dismiss_notice(notice_id):
        raise HTTPException(status_code=404, detail="Notice not found")
    return Response(status_code=204)


@router.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")


def create_app(coordinator: SyncCoordinator) -> FastAPI:
    """Builds the bridge around an existing coordinator"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Starts syncing on startup and tears subscriptions down on shutdown"""
        await coordinator.start()
        logger.info("application_startup_complete")

        yield

        coordinator.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Campus Chat Sync",
        description="Conversation sync engine for the campus marketplace client",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests"""
        REQUESTS.inc()
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            return await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    app.include_router(router)
    return app


def local_coordinator(settings: Optional[Settings] = None) -> SyncCoordinator:
    """Coordinator over in-memory collaborators for local development"""
    settings = settings or Settings.from_env()
    raw_user_id = os.getenv("CAMPUS_CHAT_LOCAL_USER_ID")
    user_id = UUID(raw_user_id) if raw_user_id else uuid4()
    backend = InMemoryBackend()
    return SyncCoordinator(
        identity=InMemoryIdentityProvider(user_id),
        data_store=backend,
        channel=backend.channel,
        dispatcher=RecordingNotificationDispatcher(),
        settings=settings,
    )


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(local_coordinator(_settings))
