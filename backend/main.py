from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging
import time
import socket as socketlib

import config
config.setup_logging()

from blocklist import blocklist
from question_source import CATEGORIES
from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Trust-or-Doubt backend")
    blocklist.load()
    socket_manager.start_cleanup_loop()
    yield
    logger.info("Shutting down Trust-or-Doubt backend")
    await socket_manager.shutdown()


app = FastAPI(title="Trust or Doubt Backend", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, reconnect_token: str = ""):
    await socket_manager.connect(websocket, reconnect_token=reconnect_token)


@app.get("/categories")
async def get_categories():
    return {"categories": list(CATEGORIES), "difficulties": list(config.VALID_DIFFICULTIES)}


@app.get("/debug/matches")
async def debug_matches():
    """Live match summaries. Never includes tokens, answers or questions."""
    return {"matches": [m.summary() for m in socket_manager.registry.matches.values()]}


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    socket_manager.allowed_origins = origins
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        f"http://{local_ip}:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Trust or Doubt server is running", "timestamp": time.time()}


@app.get("/health")
async def health():
    return {"status": "healthy", "matches": len(socket_manager.registry.matches)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
