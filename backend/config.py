import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables in priority order:
# 1. backend/.env (lowest priority)
# 2. repo_root/.env (overrides backend)
# 3. repo_root/.env.local (highest priority - overrides everything)
repo_root = Path(__file__).parent.parent
env_local = repo_root / ".env.local"
env_file = repo_root / ".env"
backend_env = Path(__file__).parent / ".env"

if backend_env.exists():
    load_dotenv(dotenv_path=backend_env, override=False)
if env_file.exists():
    load_dotenv(dotenv_path=env_file, override=True)
if env_local.exists():
    load_dotenv(dotenv_path=env_local, override=True)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# -----------------------------------------------------------------------------
# Cache store database
# -----------------------------------------------------------------------------
POSTGRES_CONNECTION_STRING = os.getenv("POSTGRES_CONNECTION_STRING") or os.getenv("DATABASE_URL")
# "postgres" or "sqlite"; Postgres is the default whenever a connection string is configured
CACHE_DB_BACKEND = os.getenv(
    "CACHE_DB_BACKEND",
    "postgres" if POSTGRES_CONNECTION_STRING else "sqlite",
).lower()
SQLITE_PATH = os.getenv("SQLITE_PATH", str(Path(__file__).parent / "constellations.db"))
# Allow falling back to SQLite when Postgres is configured but unreachable (dev only)
ENABLE_SQLITE_FALLBACK = _env_bool("ENABLE_SQLITE_FALLBACK")

# -----------------------------------------------------------------------------
# Cache store HTTP service
# -----------------------------------------------------------------------------
PORT = int(os.getenv("PORT", "4000"))
CACHE_API_BASE = os.getenv("CACHE_API_BASE", f"http://127.0.0.1:{PORT}")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
# 0 disables the per-IP limiter
RATE_LIMIT_PER_IP_PER_MIN = int(os.getenv("RATE_LIMIT_PER_IP_PER_MIN", "0"))

# Partial (fuzzy) context matching for GET /expansion
CACHE_MIN_SIMILARITY = float(os.getenv("CACHE_MIN_SIMILARITY", "0.5"))
CACHE_ACCEPT_PARTIAL = _env_bool("CACHE_ACCEPT_PARTIAL", "true")

# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
MODEL_NEIGHBORS = os.getenv("MODEL_NEIGHBORS", "gpt-4o-mini")
MODEL_CLASSIFY = os.getenv("MODEL_CLASSIFY", "gpt-4o-mini")
WIKIPEDIA_API_URL = os.getenv("WIKIPEDIA_API_URL", "https://en.wikipedia.org/w/api.php")
GOOGLE_BOOKS_API_URL = os.getenv("GOOGLE_BOOKS_API_URL", "https://www.googleapis.com/books/v1/volumes")

# Timeouts (seconds) for every outbound call; a timeout is reported separately from an empty result
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "45"))
ENRICHMENT_TIMEOUT_SECONDS = float(os.getenv("ENRICHMENT_TIMEOUT_SECONDS", "8"))
CACHE_TIMEOUT_SECONDS = float(os.getenv("CACHE_TIMEOUT_SECONDS", "5"))

# -----------------------------------------------------------------------------
# Viewport-driven enrichment
# -----------------------------------------------------------------------------
ENRICHMENT_MAX_CONCURRENCY = int(os.getenv("ENRICHMENT_MAX_CONCURRENCY", "2"))
ENRICHMENT_MIN_INTERVAL_SECONDS = float(os.getenv("ENRICHMENT_MIN_INTERVAL_SECONDS", "0.2"))
ENRICHMENT_MAX_VISIBLE = int(os.getenv("ENRICHMENT_MAX_VISIBLE", "15"))
VIEWPORT_MARGIN_PX = float(os.getenv("VIEWPORT_MARGIN_PX", "100"))

# Append one JSON line per expansion to backend/logs/expansion_events.jsonl
EXPANSION_EVENT_LOG = _env_bool("EXPANSION_EVENT_LOG")
