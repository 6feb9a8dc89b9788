from fastapi import FastAPI, APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from bson import ObjectId
from pathlib import Path
from typing import Optional
from datetime import datetime
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from audit_service import AuditService
from engine.config import EngineConfig, load_engine_config
from engine.errors import EngineError
from engine.sales_engine import SalesEngine
from finance_routes import create_finance_routes
from land_routes import create_land_routes
from permissions import PermissionChecker
from sale_routes import create_sale_routes

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    client: Optional[AsyncIOMotorClient],
    db,
    config: Optional[EngineConfig] = None,
    create_indexes: bool = True
) -> FastAPI:
    """
    Build the API around an already opened database.

    Tests pass an in-memory database and create_indexes=False.
    """
    config = config or load_engine_config()
    audit_service = AuditService(db)
    engine = SalesEngine(client, db, config=config, audit_service=audit_service)
    permission_checker = PermissionChecker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_indexes:
            await engine.create_indexes()
        yield
        if client is not None:
            client.close()

    app = FastAPI(
        title="Land Sales Back Office - Sale & Financial Integrity Engine",
        version="1.0.0",
        description="Land allocation, staged sales, two-tier approvals and cancellation refunds",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.state.audit_service = audit_service

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        if exc.status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": jsonable_encoder(exc.to_dict(), custom_encoder={ObjectId: str})
            }
        )

    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0",
            "transactions": config.use_transactions
        }

    app.include_router(api_router)
    app.include_router(create_land_routes(engine, permission_checker))
    app.include_router(create_sale_routes(engine, permission_checker))
    app.include_router(create_finance_routes(engine, audit_service, permission_checker))

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


def build_default_app() -> FastAPI:
    config = load_engine_config()
    client = AsyncIOMotorClient(config.mongo_url)
    return create_app(client, client[config.db_name], config=config)


# uvicorn server:app
app = build_default_app()
