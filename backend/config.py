"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per connection
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_NAME_LENGTH = 20

# --- Matches ---
MATCH_CODE_LENGTH = 6
MAX_MATCH_CODE_ATTEMPTS = 10
MAX_MATCHES = int(os.getenv("MAX_MATCHES", "200"))
MAX_PLAYERS_PER_MATCH = 2
AUTO_ASSIGN_ROLES = _env_bool("AUTO_ASSIGN_ROLES")

# --- Game rules ---
INITIAL_COINS_MIN = 1
INITIAL_COINS_MAX = 3
WINNING_SCORE = 5
DRAW = "draw"

# --- Question buffer ---
INITIAL_QUESTION_COUNT = 30
MIN_PLAYABLE_QUESTIONS = 5
QUESTION_REFILL_THRESHOLD = 5  # refill when fewer than this many questions remain ahead
QUESTION_REFILL_BATCH = 10
VALID_DIFFICULTIES = ("easy", "medium", "hard")

# --- Cleanup ---
MATCH_IDLE_TIMEOUT_SECONDS = int(os.getenv("MATCH_IDLE_TIMEOUT_SECONDS", "1800"))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "300"))
FINISHED_MATCH_GRACE_SECONDS = int(os.getenv("FINISHED_MATCH_GRACE_SECONDS", "60"))
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", "14400"))
SESSION_DISCONNECT_GRACE_SECONDS = int(os.getenv("SESSION_DISCONNECT_GRACE_SECONDS", "900"))

# --- Blocklist ---
BLOCKLIST_PATH = os.getenv("BLOCKLIST_PATH", "reported_questions.json")

# --- Question generator (LLM) ---
GENERATOR_ENABLED = _env_bool("GENERATOR_ENABLED", "true")
GENERATOR_PROVIDER = os.getenv("GENERATOR_PROVIDER", "gemini")
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434/api/generate")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen2.5:14b-instruct")
OLLAMA_TIMEOUT = int(os.getenv("OLLAMA_TIMEOUT", "120"))
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_TIMEOUT = 60
LLM_MAX_RETRIES = 2
GENERATOR_MAX_REQUESTS = int(os.getenv("GENERATOR_MAX_REQUESTS", "20"))
GENERATOR_WINDOW_SECONDS = int(os.getenv("GENERATOR_WINDOW_SECONDS", "3600"))

# --- Fallback trivia API ---
FALLBACK_API_ENABLED = _env_bool("FALLBACK_API_ENABLED", "true")
FALLBACK_API_URL = os.getenv("FALLBACK_API_URL", "https://opentdb.com/api.php")
FALLBACK_API_TIMEOUT = 8
FALLBACK_API_MAX_REQUESTS = int(os.getenv("FALLBACK_API_MAX_REQUESTS", "30"))
FALLBACK_API_WINDOW_SECONDS = int(os.getenv("FALLBACK_API_WINDOW_SECONDS", "60"))
FALLBACK_API_MAX_AMOUNT = 50

# --- Question cache ---
QUESTION_CACHE_MAX = 500

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
