from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.logging import log

PROJECTS = "projects"
ISSUES = "issues"
SPACES = "confluence_spaces"
PAGES = "confluence_pages"
AUTH = "auth"

PARTITIONS = (PROJECTS, ISSUES, SPACES, PAGES, AUTH)
DATA_PARTITIONS = (PROJECTS, ISSUES, SPACES, PAGES)


class Base(DeclarativeBase):
    pass


class Partition(Base):
    """Named bucket; a row exists for every partition after initialization."""

    __tablename__ = "partitions"

    name = Column(String, primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Record(Base):
    """Key -> JSON value pair within a partition."""

    __tablename__ = "records"

    partition = Column(String, ForeignKey("partitions.name"), primary_key=True)
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """Embedded key-value store with named partitions.

    One instance owns the engine and every partition; it is constructed once
    and handed to each component that needs it. Every public operation runs
    in a single transaction under a store-wide lock, so a reader never sees a
    half-written batch or a missing partition.
    """

    def __init__(self, db_path: str | Path, partitions: Iterable[str] = PARTITIONS):
        path = str(db_path)
        if path == ":memory:":
            self._engine = create_engine(
                "sqlite://",
                future=True,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(
                f"sqlite:///{path}",
                future=True,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            event.listen(self._engine, "connect", _set_sqlite_pragmas)

        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._lock = threading.RLock()
        self._partitions = tuple(partitions)

        Base.metadata.create_all(self._engine)
        with self._transaction() as session:
            for name in self._partitions:
                if session.get(Partition, name) is None:
                    session.add(Partition(name=name))
        log.debug("store.opened", path=path, partitions=list(self._partitions))

    @property
    def partitions(self) -> Tuple[str, ...]:
        return self._partitions

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._lock:
            session = self._sessions()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _check(self, partition: str) -> None:
        if partition not in self._partitions:
            raise KeyError(f"unknown partition: {partition}")

    # ---------- writes ----------
    def upsert(self, partition: str, key: str, record: Dict[str, Any]) -> None:
        self.upsert_many(partition, [(key, record)])

    def upsert_many(
        self, partition: str, pairs: Iterable[Tuple[str, Dict[str, Any]]]
    ) -> int:
        """Write all pairs in one transaction (last write wins per key)."""
        self._check(partition)
        rows = [
            {
                "partition": partition,
                "key": key,
                "value": json.dumps(record),
                "updated_at": _now(),
            }
            for key, record in pairs
        ]
        if not rows:
            return 0
        stmt = sqlite_insert(Record.__table__)
        stmt = stmt.on_conflict_do_update(
            index_elements=["partition", "key"],
            set_={"value": stmt.excluded["value"], "updated_at": stmt.excluded["updated_at"]},
        )
        with self._transaction() as session:
            session.connection().execute(stmt, rows)
        return len(rows)

    def update(
        self,
        partition: str,
        key: str,
        fn: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> bool:
        """Read-modify-write one record; returns False if the key is absent."""
        self._check(partition)
        with self._transaction() as session:
            row = session.get(Record, (partition, key))
            if row is None:
                return False
            row.value = json.dumps(fn(json.loads(row.value)))
            row.updated_at = _now()
        return True

    def delete_matching(
        self, partition: str, predicate: Callable[[Dict[str, Any]], bool]
    ) -> int:
        """Delete every record whose decoded value satisfies ``predicate``."""
        self._check(partition)
        with self._transaction() as session:
            doomed = []
            for key, value in session.execute(
                select(Record.key, Record.value).where(Record.partition == partition)
            ):
                try:
                    decoded = json.loads(value)
                except ValueError:
                    continue
                if predicate(decoded):
                    doomed.append(key)
            for key in doomed:
                session.execute(
                    delete(Record).where(
                        Record.partition == partition, Record.key == key
                    )
                )
        return len(doomed)

    def clear(self, partition: str) -> None:
        """Delete then recreate a partition in one transaction."""
        self.clear_all([partition])

    def clear_all(self, partitions: Optional[Iterable[str]] = None) -> None:
        names = list(partitions) if partitions is not None else list(DATA_PARTITIONS)
        for name in names:
            self._check(name)
        with self._transaction() as session:
            for name in names:
                session.execute(delete(Record).where(Record.partition == name))
                session.execute(delete(Partition).where(Partition.name == name))
                session.add(Partition(name=name))
        log.info("store.cleared", partitions=names)

    # ---------- reads ----------
    def get(self, partition: str, key: str) -> Optional[Dict[str, Any]]:
        self._check(partition)
        with self._transaction() as session:
            row = session.get(Record, (partition, key))
            return json.loads(row.value) if row is not None else None

    def get_all(self, partition: str) -> List[Dict[str, Any]]:
        """Every decoded record in the partition, ordered by key."""
        self._check(partition)
        with self._transaction() as session:
            values = session.scalars(
                select(Record.value)
                .where(Record.partition == partition)
                .order_by(Record.key)
            ).all()
        records = []
        for value in values:
            try:
                records.append(json.loads(value))
            except ValueError:
                log.warning("store.record.undecodable", partition=partition)
        return records

    def keys(self, partition: str) -> List[str]:
        self._check(partition)
        with self._transaction() as session:
            return list(
                session.scalars(
                    select(Record.key)
                    .where(Record.partition == partition)
                    .order_by(Record.key)
                ).all()
            )

    def count(self, partition: str) -> int:
        self._check(partition)
        with self._transaction() as session:
            return session.scalar(
                select(func.count()).select_from(Record).where(Record.partition == partition)
            ) or 0

    def has_partition(self, partition: str) -> bool:
        with self._transaction() as session:
            return session.get(Partition, partition) is not None

    def close(self) -> None:
        self._engine.dispose()


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()
