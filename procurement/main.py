from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from procurement.config import settings
from procurement.database import db
from procurement.api import purchase_orders

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    db.connect()
    logger.info(f"Purchase order engine started ({settings.ENVIRONMENT})")
    yield
    db.close()

app = FastAPI(
    title="Purchase Order Lifecycle API",
    description="Approval, receiving and weighted average costing for purchase orders",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(purchase_orders.router)

@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "database": settings.DB_NAME,
    }

if __name__ == "__main__":
    uvicorn.run("procurement.main:app", host="0.0.0.0", port=settings.API_PORT, reload=True)
