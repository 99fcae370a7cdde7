"""FastAPI application for the HTTP transport"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autotask_mcp.admin.routes import admin_router
from autotask_mcp.autotask_client import get_autotask_client
from autotask_mcp.config import settings
from autotask_mcp.mapping_service import reset_mapping_service
from autotask_mcp.tools import mcp

logger = logging.getLogger(__name__)

# MCP endpoint ends up at /autotask/mcp
mcp_app = mcp.http_app(path="/mcp")


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with mcp_app.lifespan(app):
        logger.info(f"{settings.server_name} {settings.server_version} listening on {settings.host}:{settings.port}")
        yield
    reset_mapping_service()
    await get_autotask_client().aclose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Autotask MCP Server",
    description="Autotask PSA tools over the Model Context Protocol",
    version=settings.server_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router, prefix="/admin")


@app.get("/health")
async def health_check():
    """Health check"""
    return {
        "status": "ok",
        "service": settings.server_name,
        "version": settings.server_version,
        "multi_tenant": settings.multi_tenant_enabled,
    }


app.mount("/autotask", mcp_app)
