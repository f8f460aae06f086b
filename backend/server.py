"""
Envelope Hub - Main Server

Entry point for the sequential workflow API. Routes are organized in
/envelope_routes/, workflow logic in /envelope_services/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

from envelope_services import MongoEnvelopeStore, SequentialWorkflowService
from envelope_services.workflow_config import (
    MONGO_URL, DB_NAME, ENVELOPES_COLLECTION, LOG_LEVEL, CORS_ORIGINS,
    get_config_status,
)
from envelope_routes import workflows

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client

    logger.info("Starting Envelope Hub...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    store = MongoEnvelopeStore(db[ENVELOPES_COLLECTION])
    await store.create_indexes()

    workflows.set_dependencies(SequentialWorkflowService(store))

    logger.info("Envelope Hub started successfully")

    yield

    logger.info("Shutting down Envelope Hub...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Envelope Hub",
    description="Sequential multi-stage approval workflows for shipment envelopes",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_router = APIRouter(prefix="/api")
api_router.include_router(workflows.router)
app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Envelope Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "envelope-hub",
        "config": get_config_status()
    }
