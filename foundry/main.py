"""Foundry FastAPI backend: application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from foundry import config
from foundry.db import connection, migrations
from foundry.observability import initialize as initialize_observability, shutdown as shutdown_observability
from foundry.routers.feature_nodes import feature_nodes_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("foundry")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Foundry backend starting up")
    initialize_observability(app)

    db = await connection.get_connection()
    await migrations.run_migrations(db)

    yield

    logger.info("Foundry backend shutting down")
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Foundry API",
    description="Feature tree engine for product planning projects",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(feature_nodes_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("foundry.main:app", host=config.HOST, port=config.PORT)
