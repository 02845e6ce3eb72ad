from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app_logger import install_request_logging, setup_logging
from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    RFID_POLL_ENABLED,
)
from backend.routers.admin import router as admin_router
from backend.routers.complaints import router as complaints_router
from backend.routers.core import router as core_router
from backend.routers.council import router as council_router
from backend.routers.denials import router as denials_router
from backend.routers.meals import router as meals_router
from backend.routers.schedule import router as schedule_router
from backend.routers.store import router as store_router
from backend.routers.students import router as students_router
from backend.routers.verify import router as verify_router
from backend.services.rfid_poller import RfidPoller
from backend.services.verification import VerificationService
from database.db import create_tables

logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    service = VerificationService()
    app.state.verification = service

    poller = None
    if RFID_POLL_ENABLED:
        poller = RfidPoller(service)
        poller.start()
    app.state.rfid_poller = poller
    logger.info("Meal card service ready")

    yield

    if poller is not None:
        poller.stop()
    service.shutdown()


app = FastAPI(title="Meal Card API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)
install_request_logging(app)

app.include_router(core_router)
app.include_router(students_router)
app.include_router(schedule_router)
app.include_router(denials_router)
app.include_router(verify_router)
app.include_router(meals_router)
app.include_router(admin_router)
app.include_router(store_router)
app.include_router(council_router)
app.include_router(complaints_router)
