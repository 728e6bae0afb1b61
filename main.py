from contextlib import asynccontextmanager

import structlog
import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from advisor import OfflineAdvisor, ai_router
from auth import auth_router, purge_refresh_tokens
from config import get_settings
from database import Base, SessionLocal, engine
from errors import LedgerError
from hub import NotificationHub
from logger import configure_logging
from ratelimit import limiter, rate_limit_exceeded_handler
from router import router
from stats import stats_router

settings = get_settings()
configure_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger(__name__)


def purge_expired_tokens():
    with SessionLocal() as db:
        purge_refresh_tokens(db)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        purge_expired_tokens, "cron", hour=settings.token_purge_hour, minute=0
    )
    scheduler.start()
    logger.info("server started", env=settings.app_env)
    try:
        yield
    finally:
        scheduler.shutdown(wait=False)
        logger.info("server stopped")


app = FastAPI(title="Budget Planner API", lifespan=lifespan)
app.state.hub = NotificationHub(settings.notification_buffer_size)
app.state.advisor = OfflineAdvisor()
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "validation failed", "errors": jsonable_errors(exc)},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "internal server error"})


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


app.include_router(router, prefix="/api/v1", tags=["plans"])
app.include_router(auth_router, prefix="/api/v1/auth", tags=["authentication"])
app.include_router(stats_router, prefix="/api/v1/stats", tags=["stats"])
app.include_router(ai_router, prefix="/api/v1/ai", tags=["ai"])


@app.get("/")
def home():
    return {"message": "Welcome to Budget Planner API"}


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
