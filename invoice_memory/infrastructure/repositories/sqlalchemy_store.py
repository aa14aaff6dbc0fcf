import os
import time
import uuid
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from invoice_memory.domain.exceptions import StoreUnavailable
from invoice_memory.domain.interfaces import Store
from invoice_memory.infrastructure.models.memory_models import Base, TABLE_MODELS

logger = logging.getLogger(__name__)


def _with_id(row: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(row)
    if not row.get("id"):
        row["id"] = str(uuid.uuid4())
    return row


class SqlAlchemyStore(Store):
    """Store backed by Supabase Postgres (``DATABASE_URL``) or a local SQLite file."""

    def __init__(
        self,
        database_url: str = None,
        max_retries: int = 3,
        retry_delay: float = 2,
    ):
        if database_url is None:
            database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise StoreUnavailable("No database URL configured")

        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        connect_args = {}
        if database_url.startswith("postgresql"):
            connect_args = {
                "connect_timeout": 10,
                "application_name": "invoice-memory",
            }

        self.engine = None
        self.SessionLocal = None
        self.connected = False

        for attempt in range(max_retries):
            try:
                logger.info(f"🔄 Database connection attempt {attempt + 1}/{max_retries}...")

                self.engine = create_engine(
                    database_url,
                    pool_pre_ping=True,
                    pool_recycle=300,
                    connect_args=connect_args,
                )

                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))

                self.SessionLocal = sessionmaker(
                    autocommit=False,
                    autoflush=False,
                    expire_on_commit=False,
                    bind=self.engine,
                )

                Base.metadata.create_all(bind=self.engine)

                self.connected = True
                logger.info("✅ Database connected successfully")
                break

            except OperationalError as e:
                logger.warning(f"❌ Connection attempt {attempt + 1} failed: {e}")

                if attempt < max_retries - 1:
                    logger.info(f"⏳ Retrying in {retry_delay} seconds...")
                    time.sleep(retry_delay)

        if not self.connected:
            self.engine = None
            raise StoreUnavailable(f"Could not connect after {max_retries} attempts")

    def is_connected(self):
        return self.connected

    @contextmanager
    def _session(self):
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database operation failed: {e}")
            raise StoreUnavailable(str(e)) from e
        finally:
            session.close()

    def _model(self, table: str):
        try:
            return TABLE_MODELS[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}")

    def _filtered(self, session, model, filters: Optional[Dict[str, Any]]):
        query = session.query(model)
        for column_name, value in (filters or {}).items():
            column = getattr(model, column_name, None)
            if column is None:
                raise ValueError(f"Unknown column {model.__tablename__}.{column_name}")
            query = query.filter(column.is_(None) if value is None else column == value)
        return query

    def get(
        self, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        model = self._model(table)
        with self._session() as session:
            rows = self._filtered(session, model, filters).order_by(model.pk).all()
            return [row.to_dict() for row in rows]

    def upsert(
        self, table: str, key: Dict[str, Any], patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        model = self._model(table)
        with self._session() as session:
            rows = self._filtered(session, model, key).order_by(model.pk).all()
            if not rows:
                row = model(**_with_id({**key, **patch}))
                session.add(row)
                session.flush()
                return row.to_dict()

            for row in rows:
                for column_name, value in patch.items():
                    setattr(row, column_name, value)
            session.flush()
            return rows[0].to_dict()

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(table)
        with self._session() as session:
            record = model(**_with_id(row))
            session.add(record)
            session.flush()
            return record.to_dict()

    def delete(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        model = self._model(table)
        with self._session() as session:
            return self._filtered(session, model, filters).delete(
                synchronize_session=False
            )
