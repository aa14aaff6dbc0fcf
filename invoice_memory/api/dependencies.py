import logging
from functools import lru_cache

from fastapi import Depends

from invoice_memory.application.use_cases.process_invoice import InvoiceProcessor
from invoice_memory.config import get_settings
from invoice_memory.domain.exceptions import StoreUnavailable
from invoice_memory.domain.interfaces import Store
from invoice_memory.infrastructure.repositories.memory_store import InMemoryStore
from invoice_memory.infrastructure.repositories.sqlalchemy_store import SqlAlchemyStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_store() -> Store:
    settings = get_settings()
    if settings.offline_mode:
        logger.info("ℹ️  OFFLINE_MODE set - using in-memory store")
        return InMemoryStore()

    try:
        return SqlAlchemyStore(
            settings.effective_database_url,
            max_retries=settings.db_connect_retries,
            retry_delay=settings.db_retry_delay,
        )
    except StoreUnavailable as e:
        logger.warning(f"⚠️  Database unavailable ({e}) - falling back to in-memory store")
        return InMemoryStore()


def get_processor(store: Store = Depends(get_store)) -> InvoiceProcessor:
    return InvoiceProcessor(store)
