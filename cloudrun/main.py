# cloudrun/main.py

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
import asyncio
import os
import logging
from cachetools import TTLCache
from cachetools.keys import hashkey
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from services.analysis_errors import AnalysisError, InvalidArgument
from services.analysis_service import AnalysisService
from services.auth import get_current_user
from services.input_validator import InputValidator
from services.models import AnalysisRequest
from services.rate_limiter import limiter
from services.secret_manager import resolve_credential
from config import Config

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="GA4 AI Analysis API",
    description="AI-generated summaries and improvement recommendations for GA4 reports",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


async def analysis_error_handler(request: Request, exc: AnalysisError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Malformed request to {request.url.path}: {exc.errors()}")
    return await analysis_error_handler(request, InvalidArgument("Invalid request body"))


app.add_exception_handler(AnalysisError, analysis_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cache-Control"] = "no-store"
    return response


# Built on first use: the Firestore client needs credentials that are not
# available at import time in tests or local runs.
_analysis_service = None


def get_analysis_service() -> AnalysisService:
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = AnalysisService.from_config()
    return _analysis_service


# Routes

@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "model": Config.GEMINI_MODEL,
        "genai_configured": Config.has_genai_credentials(),
    }


# ============================================================================
# AI ANALYSIS
# ============================================================================

@app.post("/api/ai/analysis")
@limiter.limit(Config.ANALYSIS_RATE_LIMIT)
async def generate_analysis(
    body: AnalysisRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
    service: AnalysisService = Depends(get_analysis_service),
):
    """
    Generate (or return the cached) AI summary and recommendations for one
    GA4 report page.

    1. Validates input (InputValidator)
    2. Gate: quota check + cache lookup
    3. Prompt -> Gemini -> recommendation extraction -> section dedup
    4. Cache write + usage increment
    """
    validated = InputValidator.validate_analysis_request(body)
    result = await service.generate(user_id, validated)
    return result.to_dict()


@app.get("/api/ai/usage")
async def get_ai_usage(
    user_id: str = Depends(get_current_user),
    service: AnalysisService = Depends(get_analysis_service),
):
    """Current month's AI generation usage per category."""
    try:
        usage = await service.get_usage(user_id)
    except Exception as e:
        logger.error(f"Error fetching usage for {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch usage")
    return {"userId": user_id, "usage": usage}


# ============================================================================
# ADMIN
# ============================================================================

# Admin key resolution hits Secret Manager; keep it for ten minutes.
_admin_key_cache = TTLCache(maxsize=1, ttl=600)


async def _admin_api_key():
    key = hashkey('admin_api_key')
    if key in _admin_key_cache:
        return _admin_key_cache[key]
    admin_api_key = await asyncio.to_thread(
        resolve_credential,
        Config.ADMIN_API_KEY,
        Config.ADMIN_API_KEY_SECRET_NAME,
        Config.PROJECT_ID,
    )
    # A missing key is retried on the next request, not pinned for the TTL
    if admin_api_key:
        _admin_key_cache[key] = admin_api_key
    return admin_api_key


async def verify_admin_key(request: Request) -> bool:
    """Verify admin API key from Authorization header."""
    admin_api_key = await _admin_api_key()
    if not admin_api_key:
        logger.warning("ADMIN_API_KEY not configured - admin endpoints disabled")
        raise HTTPException(status_code=503, detail="Admin endpoints not configured")

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    provided_key = auth_header[7:]  # Strip "Bearer "
    if provided_key != admin_api_key:
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid admin API key attempt from {client_host}")
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


@app.post("/api/admin/cleanup-cache")
async def cleanup_legacy_cache(
    request: Request,
    service: AnalysisService = Depends(get_analysis_service),
):
    """
    Delete legacy cache entries past retention, for all users.

    Requires: Authorization: Bearer <ADMIN_API_KEY>
    """
    await verify_admin_key(request)

    try:
        deleted = await service.cleanup_legacy_cache()
    except Exception as e:
        logger.error(f"Legacy cache cleanup failed: {e}")
        raise HTTPException(status_code=500, detail="Cache cleanup failed")

    return {
        "status": "success",
        "deleted": deleted,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
