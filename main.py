import logging

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from invoice_memory.api.dependencies import get_store
from invoice_memory.api.endpoints import invoices
from invoice_memory.config import get_settings
from invoice_memory.domain.interfaces import Store
from invoice_memory.infrastructure.repositories.sqlalchemy_store import SqlAlchemyStore

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Memory API",
    description="Learned vendor patterns for invoice normalization and review decisions",
    version="1.0.0",
)


def get_allowed_origins():
    origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8000",
    ]

    if settings.frontend_url:
        origins.append(settings.frontend_url)
        logger.info(f"🌐 Added frontend URL from env: {settings.frontend_url}")

    return sorted(set(origins))


allowed_origins = get_allowed_origins()
logger.info(f"🌐 CORS enabled for {len(allowed_origins)} origins")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=600,
)

app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])


@app.get("/")
def root():
    return {
        "message": "Invoice Memory API is running",
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check(store: Store = Depends(get_store)):
    if isinstance(store, SqlAlchemyStore):
        store_status = "connected" if store.is_connected() else "disconnected"
    else:
        store_status = "in_memory"

    return {
        "status": "healthy",
        "service": "Invoice Memory API",
        "version": "1.0.0",
        "store_status": store_status,
        "offline_mode": settings.offline_mode,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
