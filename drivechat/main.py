import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from drivechat.core.exceptions import NotFoundError, PermissionDeniedError, TransientStoreError
from drivechat.core.logging import setup_logging
from drivechat.database.connection import close_store, connect_store, get_store
from drivechat.repositories.conversation_repository import ConversationRepository
from drivechat.repositories.message_repository import MessageRepository
from drivechat.routers.chat import router as chat_router
from drivechat.routers.conversations import router as conversations_router
from drivechat.routers.devices import router as devices_router
from drivechat.routers.presence import router as presence_router
from drivechat.services.chat_service import ChatService


setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    store = await connect_store()
    await ConversationRepository(store).ensure_indexes()
    await MessageRepository(store).ensure_indexes()
    try:
        yield
    finally:
        await ChatService.wait_for_background()
        await close_store()


app = FastAPI(title="drivechat", lifespan=lifespan)


app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(presence_router)
app.include_router(devices_router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(TransientStoreError)
async def transient_handler(request: Request, exc: TransientStoreError):
    logger.warning("Store unavailable for %s", request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Store temporarily unavailable"})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/")
async def root():

    store = get_store()
    return {"message": "drivechat is running", "store": type(store).__name__, "live_subscriptions": store.live_subscriptions}
