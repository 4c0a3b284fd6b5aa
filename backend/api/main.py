import uuid
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, status, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

import redis.asyncio as redis
from redis.exceptions import RedisError

from common.config import settings
from common.db import AsyncSessionLocal, create_schema, get_db
from common.adapter import adapter
from common.todoist import todoist_adapter
from common.sessions import SessionManager
from common.drafts import DraftStore
from common.orchestrator import TaskOrchestrator
from common.callbacks import CallbackHandler
from common.edit_prompts import EditPromptTracker
from common.telegram import verify_telegram_secret, parse_update, send_message
from api.commands import BotServices
from api.dispatcher import dispatch_update
from api.schemas import TelegramWebhookResponse

logger = logging.getLogger(__name__)


def build_services() -> BotServices:
    sessions = SessionManager(AsyncSessionLocal, todoist_adapter)
    drafts = DraftStore(AsyncSessionLocal)
    orchestrator = TaskOrchestrator(sessions, drafts, adapter, todoist_adapter)
    return BotServices(
        sessions=sessions,
        drafts=drafts,
        orchestrator=orchestrator,
        callbacks=CallbackHandler(sessions, orchestrator),
        edit_prompts=EditPromptTracker(settings.EDIT_PROMPT_TTL_SECONDS, settings.EDIT_PROMPT_MAX_ENTRIES),
        todoist=todoist_adapter,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Local runs use create_all; deployed databases are migrated with Alembic.
    if settings.APP_ENV == "dev":
        await create_schema()
    yield


app = FastAPI(title="Discussion Tasks Bot", lifespan=lifespan)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

services = build_services()

# --- Middleware ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _is_telegram_sender_allowed(chat_id: int) -> bool:
    allowed_chat_ids = settings.telegram_allowed_chat_ids
    if not allowed_chat_ids:
        return True
    return str(chat_id) in allowed_chat_ids


async def _claim_update(update_id: Optional[int]) -> bool:
    """Mark an update as seen. False means Telegram redelivered it."""
    if update_id is None:
        return True
    try:
        claimed = await redis_client.set(
            f"tg:update:{update_id}", "1", nx=True, ex=settings.UPDATE_DEDUP_TTL_SECONDS
        )
    except RedisError as exc:
        logger.warning("Update dedupe unavailable, processing update %s anyway: %s", update_id, exc)
        return True
    return bool(claimed)


@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}


@app.post("/v1/integrations/telegram/webhook", response_model=TelegramWebhookResponse)
async def telegram_webhook(request: Request):
    # 1. Validate secret
    if not verify_telegram_secret(request.headers):
        raise HTTPException(status_code=403, detail="Unauthorized webhook source")

    # 2. Parse update
    try:
        update_json = await request.json()
    except ValueError:
        return {"status": "ignored"}
    if not isinstance(update_json, dict):
        return {"status": "ignored"}

    data = parse_update(update_json)
    if not data:
        return {"status": "ignored"}

    chat_id = data["chat_id"]
    if not _is_telegram_sender_allowed(chat_id):
        logger.warning("Ignoring telegram update from disallowed chat_id=%s", chat_id)
        return {"status": "ignored"}

    if not await _claim_update(data.get("update_id")):
        logger.info("Ignoring redelivered telegram update %s", data.get("update_id"))
        return {"status": "duplicate"}

    try:
        await dispatch_update(services, data)
    except Exception:
        logger.exception("Telegram routing failed for chat %s", chat_id)
        await send_message(chat_id, "Sorry, I had trouble processing that message. Please try again later.")

    return {"status": "ok"}
