from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import time

from db.database import DB_PATH, init_db
from routers import bills, history

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

logger = logging.getLogger("splitbill")

VERSION = "0.1.0"

app = FastAPI(
    title="Split Bill — Receipt Extraction",
    description="Photograph a receipt, extract its items with a vision model, split the total",
    version=VERSION,
)

_cors_origins = os.environ.get("CORS_ORIGINS", "").strip()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins.split(",") if _cors_origins else ["*"],
    allow_credentials=bool(_cors_origins),  # only send credentials when origins are explicit
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(bills.router,   prefix="/api",         tags=["bills"])
app.include_router(history.router, prefix="/api/history", tags=["history"])

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response

@app.on_event("startup")
async def on_startup():
    logger.info("Starting Split Bill v%s  LOG_LEVEL=%s  DB=%s", VERSION, LOG_LEVEL, DB_PATH)
    await init_db()

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/diagnose")
async def diagnose():
    """Check that the model provider and data directory are usable."""
    from services.model_client import BILL_MODEL, BILL_MODEL_PROVIDER, DEFAULT_MODELS
    results = {}

    key_var = {"anthropic": "ANTHROPIC_API_KEY", "openai": "OPENAI_API_KEY"}.get(BILL_MODEL_PROVIDER)
    results["provider"] = {
        "ok": key_var is not None,
        "name": BILL_MODEL_PROVIDER,
        "model": BILL_MODEL or DEFAULT_MODELS.get(BILL_MODEL_PROVIDER),
    }

    # API key (never expose key material; only report presence)
    key = os.environ.get(key_var, "") if key_var else ""
    results["api_key"] = {"ok": bool(key), "set": bool(key), "env": key_var}

    data_dir = os.path.dirname(DB_PATH) or "."
    results["data_dir"] = {
        "ok": os.path.isdir(data_dir) and os.access(data_dir, os.W_OK),
        "path": data_dir,
    }

    return {"all_ok": all(v.get("ok") for v in results.values()), "checks": results}
