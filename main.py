# main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

# --- slowapi (Rate Limiting) ---
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from payroll_auth.api.endpoints import auth
from payroll_auth.core.config import settings
from payroll_auth.core.exceptions import MFAError, RateLimited
from payroll_auth.db.session import dispose_engine

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    enabled=settings.RATE_LIMIT_ENABLED,
)

app = FastAPI(
    title="Payroll Admin Auth API",
    description="Password login, second factor challenge and MFA enrollment for the payroll admin client",
    version="1.0.0",
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error bodies: {"detail": ..., "error": <code>} ---
@app.exception_handler(MFAError)
async def mfa_error_handler(request: Request, exc: MFAError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.error_code},
    )


# SlowAPIMiddleware calls this handler synchronously, so it must stay a plain function.
@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit hit from {get_remote_address(request)}: {exc.detail}")
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}", "error": RateLimited.error_code},
    )


app.include_router(
    auth.router,
    prefix=f"{settings.API_PREFIX}/auth",
    tags=["Authentication"],
)


# --- Shutdown & root ---
@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down: disposing database engine...")
    await dispose_engine()
    logger.info("Database engine disposed.")


@app.get("/")
def read_root():
    return {"message": "Payroll Admin Auth API is running!"}
