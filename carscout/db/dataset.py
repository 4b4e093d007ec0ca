"""Append-only output datasets for delivered records."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from carscout.config import settings
from carscout.db.models import Base, DatasetItem

logger = logging.getLogger(__name__)


class Dataset(Protocol):
    """Durable, ordered, append-only sink."""

    async def append(self, item: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class JsonlDataset:
    """Appends one JSON document per line to a file."""

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path or settings.dataset_path)
        self._lock = asyncio.Lock()

    async def append(self, item: Dict[str, Any]) -> None:
        line = json.dumps(item, ensure_ascii=False, default=str)
        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()

    def read_all(self) -> List[Dict[str, Any]]:
        """Load every item in append order."""
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    async def close(self) -> None:
        return None


class SqlDataset:
    """
    Appends items to the ``dataset_items`` table.

    Defaults to SQLite through aiosqlite; any SQLAlchemy async URL works.
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        self.database_url = database_url or settings.database_url
        self._engine = engine
        self._session_factory: Optional[async_sessionmaker] = None
        self._init_lock = asyncio.Lock()

    async def _ensure_ready(self) -> async_sessionmaker:
        async with self._init_lock:
            if self._session_factory is None:
                if self._engine is None:
                    self._prepare_sqlite_dir()
                    self._engine = create_async_engine(self.database_url, echo=False)
                async with self._engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        return self._session_factory

    def _prepare_sqlite_dir(self) -> None:
        prefix = "sqlite+aiosqlite:///"
        if self.database_url.startswith(prefix) and ":memory:" not in self.database_url:
            Path(self.database_url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)

    async def append(self, item: Dict[str, Any]) -> None:
        session_factory = await self._ensure_ready()
        scraped_at = item.get("scraped_at")
        if isinstance(scraped_at, str):
            scraped_at = datetime.fromisoformat(scraped_at)

        row = DatasetItem(
            record_type=item.get("type", "unknown"),
            identifier=item.get("identifier"),
            title=item.get("title"),
            source_url=item.get("source_url", ""),
            page_number=item.get("page_number"),
            extraction_origin=item.get("extraction_origin"),
            payload=item,
            scraped_at=scraped_at or datetime.now(timezone.utc),
        )
        async with session_factory() as db:
            db.add(row)
            await db.commit()

    async def read_all(self) -> List[Dict[str, Any]]:
        """Load every item payload in append order."""
        session_factory = await self._ensure_ready()
        async with session_factory() as db:
            result = await db.execute(select(DatasetItem).order_by(DatasetItem.id))
            return [row.payload for row in result.scalars().all()]

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


def create_dataset(backend: Optional[str] = None) -> Dataset:
    """Build the configured output dataset."""
    backend = (backend or settings.dataset_backend).lower()
    if backend == "sql":
        return SqlDataset()
    if backend == "jsonl":
        return JsonlDataset()
    raise ValueError(f"Unknown dataset backend: {backend}")
