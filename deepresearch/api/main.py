from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepresearch.api.routes import models, research
from deepresearch.config import settings
from deepresearch.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("deepresearch API starting")
    yield
    logger.info("deepresearch API stopped")


app = FastAPI(
    title="deepresearch",
    description="Iterative web research agent powered by SearXNG and OpenRouter",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepresearch"}
