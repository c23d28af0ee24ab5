import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from poetalk.api.deps import get_store, reset_sessions
from poetalk.api.routes_chat import router as chat_router
from poetalk.api.routes_conversation import router as conversation_router
from poetalk.api.routes_settings import router as settings_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)


@asynccontextmanager
async def lifespan(app):
    yield
    # Write debounced saves now rather than losing them with the process
    await get_store().flush()
    await reset_sessions()


app = FastAPI(title="Poetalk Backend", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "null",  # file:// origin of a desktop shell
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(chat_router)
app.include_router(conversation_router)
app.include_router(settings_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
