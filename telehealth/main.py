import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from telehealth.config import settings
from telehealth.core.errors import register_exception_handlers
from telehealth.core.logging import configure_logging
from telehealth.database import init_db
from telehealth.routers import admin, consultations, payments_router

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting telehealth consultation service...")

    logger.info("Creating database tables...")
    init_db()
    logger.info("Database tables ready")

    yield

    logger.info("Shutting down telehealth consultation service")


app = FastAPI(
    title="Telehealth Consultation Service",
    description="Consultation lifecycle: booking, payment, video join and audit",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(consultations.router)
app.include_router(payments_router.router)
app.include_router(admin.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "telehealth-consultations", "environment": settings.ENVIRONMENT}
