"""
Record store abstraction for media folders/files, with a SQLAlchemy
implementation and an in-memory test implementation.

Both implementations publish a change event to the configured feed after
every committed write, standing in for the managed backend's row-change
notifications.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import BigInteger, Column, Float, String, create_engine, select, update
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tripkit.errors import NotFoundError
from tripkit.events import ChangeEvent, Deleted, Inserted, Updated
from tripkit.feed import ChangeFeed
from tripkit.types import (
    FILES,
    FOLDERS,
    FileRecord,
    FolderRecord,
    OrphanKind,
    OrphanRecord,
)


class RecordStore(Protocol):
    """Interface for media metadata access."""

    def insert_folder(
        self, owner: str, name: str, parent_id: Optional[str] = None
    ) -> FolderRecord:
        ...

    def get_folder(self, folder_id: str) -> Optional[FolderRecord]:
        ...

    def list_folders(self, owner: str) -> list[FolderRecord]:
        ...

    def delete_folder(self, folder_id: str) -> None:
        ...

    def insert_file(
        self,
        owner: str,
        name: str,
        storage_key: str,
        *,
        folder_id: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> FileRecord:
        ...

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        ...

    def list_files(self, owner: str) -> list[FileRecord]:
        ...

    def update_file(
        self,
        file_id: str,
        *,
        name: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> FileRecord:
        ...

    def delete_file(self, file_id: str) -> None:
        ...

    def set_share(
        self, folder_ids: Iterable[str], file_ids: Iterable[str], token: Optional[str]
    ) -> tuple[list[FolderRecord], list[FileRecord]]:
        """Tag folders and files with ``token`` together; neither is written if either fails."""
        ...

    def find_shared(self, token: str) -> tuple[list[FolderRecord], list[FileRecord]]:
        ...

    def record_orphan(self, orphan: OrphanRecord) -> None:
        ...

    def list_orphans(self, include_resolved: bool = False) -> list[OrphanRecord]:
        ...

    def resolve_orphan(self, orphan_id: str) -> None:
        ...


def new_id() -> str:
    return uuid.uuid4().hex


class InMemoryRecordStore:
    """Simple in-memory record store for development and tests."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed
        self.folders: Dict[str, FolderRecord] = {}
        self.files: Dict[str, FileRecord] = {}
        self.orphans: Dict[str, OrphanRecord] = {}
        self._lock = threading.Lock()

    def _publish(self, event: ChangeEvent) -> None:
        if self.feed is not None:
            self.feed.publish(event)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.folders.clear()
            self.files.clear()
            self.orphans.clear()

    def insert_folder(
        self, owner: str, name: str, parent_id: Optional[str] = None
    ) -> FolderRecord:
        record = FolderRecord(id=new_id(), name=name, owner=owner, parent_id=parent_id)
        with self._lock:
            self.folders[record.id] = record
        self._publish(Inserted(FOLDERS, copy.copy(record)))
        return copy.copy(record)

    def get_folder(self, folder_id: str) -> Optional[FolderRecord]:
        folder = self.folders.get(folder_id)
        return copy.copy(folder) if folder else None

    def list_folders(self, owner: str) -> list[FolderRecord]:
        rows = [f for f in self.folders.values() if f.owner == owner]
        return [copy.copy(f) for f in sorted(rows, key=lambda f: f.created_at)]

    def delete_folder(self, folder_id: str) -> None:
        with self._lock:
            folder = self.folders.pop(folder_id, None)
        if folder:
            self._publish(Deleted(FOLDERS, folder_id, folder.owner))

    def insert_file(
        self,
        owner: str,
        name: str,
        storage_key: str,
        *,
        folder_id: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> FileRecord:
        record = FileRecord(
            id=new_id(),
            name=name,
            owner=owner,
            storage_key=storage_key,
            folder_id=folder_id,
            size_bytes=size_bytes,
        )
        with self._lock:
            self.files[record.id] = record
        self._publish(Inserted(FILES, copy.copy(record)))
        return copy.copy(record)

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        record = self.files.get(file_id)
        return copy.copy(record) if record else None

    def list_files(self, owner: str) -> list[FileRecord]:
        rows = [f for f in self.files.values() if f.owner == owner]
        return [copy.copy(f) for f in sorted(rows, key=lambda f: f.created_at)]

    def update_file(
        self,
        file_id: str,
        *,
        name: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> FileRecord:
        with self._lock:
            record = self.files.get(file_id)
            if not record:
                raise NotFoundError(f"File {file_id} not found")
            if name is not None:
                record.name = name
            if storage_key is not None:
                record.storage_key = storage_key
            snapshot = copy.copy(record)
        self._publish(Updated(FILES, copy.copy(snapshot)))
        return snapshot

    def delete_file(self, file_id: str) -> None:
        with self._lock:
            record = self.files.pop(file_id, None)
        if record:
            self._publish(Deleted(FILES, file_id, record.owner))

    def set_share(
        self, folder_ids: Iterable[str], file_ids: Iterable[str], token: Optional[str]
    ) -> tuple[list[FolderRecord], list[FileRecord]]:
        with self._lock:
            folders = [self.folders[i] for i in folder_ids if i in self.folders]
            files = [self.files[i] for i in file_ids if i in self.files]
            for record in [*folders, *files]:
                record.public_share_id = token
            folders = [copy.copy(folder) for folder in folders]
            files = [copy.copy(record) for record in files]
        for folder in folders:
            self._publish(Updated(FOLDERS, copy.copy(folder)))
        for record in files:
            self._publish(Updated(FILES, copy.copy(record)))
        return folders, files

    def find_shared(self, token: str) -> tuple[list[FolderRecord], list[FileRecord]]:
        folders = [
            copy.copy(f)
            for f in sorted(self.folders.values(), key=lambda f: f.created_at)
            if f.public_share_id == token
        ]
        files = [
            copy.copy(f)
            for f in sorted(self.files.values(), key=lambda f: f.created_at)
            if f.public_share_id == token
        ]
        return folders, files

    def record_orphan(self, orphan: OrphanRecord) -> None:
        with self._lock:
            self.orphans[orphan.id] = orphan

    def list_orphans(self, include_resolved: bool = False) -> list[OrphanRecord]:
        rows = sorted(self.orphans.values(), key=lambda o: o.created_at)
        return [o for o in rows if include_resolved or o.resolved_at is None]

    def resolve_orphan(self, orphan_id: str) -> None:
        orphan = self.orphans.get(orphan_id)
        if orphan:
            orphan.resolved_at = time.time()


class SqlRecordStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, feed: Optional[ChangeFeed] = None):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlRecordStore")
        self.feed = feed
        self.engine = make_engine(database_url)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _publish(self, event: ChangeEvent) -> None:
        if self.feed is not None:
            self.feed.publish(event)

    @staticmethod
    def _to_folder(row: "FolderRow") -> FolderRecord:
        return FolderRecord(
            id=row.id,
            name=row.name,
            owner=row.owner,
            parent_id=row.parent_id,
            public_share_id=row.public_share_id,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_file(row: "FileRow") -> FileRecord:
        return FileRecord(
            id=row.id,
            name=row.name,
            owner=row.owner,
            storage_key=row.storage_key,
            folder_id=row.folder_id,
            size_bytes=row.size_bytes,
            public_share_id=row.public_share_id,
            created_at=row.created_at,
        )

    def insert_folder(
        self, owner: str, name: str, parent_id: Optional[str] = None
    ) -> FolderRecord:
        with self.Session() as session:
            row = FolderRow(
                id=new_id(),
                name=name,
                owner=owner,
                parent_id=parent_id,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            record = self._to_folder(row)
        self._publish(Inserted(FOLDERS, record))
        return record

    def get_folder(self, folder_id: str) -> Optional[FolderRecord]:
        with self.Session() as session:
            row = session.get(FolderRow, folder_id)
            return self._to_folder(row) if row else None

    def list_folders(self, owner: str) -> list[FolderRecord]:
        with self.Session() as session:
            stmt = (
                select(FolderRow)
                .where(FolderRow.owner == owner)
                .order_by(FolderRow.created_at.asc())
            )
            return [self._to_folder(row) for row in session.execute(stmt).scalars()]

    def delete_folder(self, folder_id: str) -> None:
        with self.Session() as session:
            row = session.get(FolderRow, folder_id)
            if not row:
                return
            owner = row.owner
            session.delete(row)
            session.commit()
        self._publish(Deleted(FOLDERS, folder_id, owner))

    def insert_file(
        self,
        owner: str,
        name: str,
        storage_key: str,
        *,
        folder_id: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> FileRecord:
        with self.Session() as session:
            row = FileRow(
                id=new_id(),
                name=name,
                owner=owner,
                storage_key=storage_key,
                folder_id=folder_id,
                size_bytes=size_bytes,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            record = self._to_file(row)
        self._publish(Inserted(FILES, record))
        return record

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        with self.Session() as session:
            row = session.get(FileRow, file_id)
            return self._to_file(row) if row else None

    def list_files(self, owner: str) -> list[FileRecord]:
        with self.Session() as session:
            stmt = (
                select(FileRow)
                .where(FileRow.owner == owner)
                .order_by(FileRow.created_at.asc())
            )
            return [self._to_file(row) for row in session.execute(stmt).scalars()]

    def update_file(
        self,
        file_id: str,
        *,
        name: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> FileRecord:
        with self.Session() as session:
            row = session.get(FileRow, file_id)
            if not row:
                raise NotFoundError(f"File {file_id} not found")
            if name is not None:
                row.name = name
            if storage_key is not None:
                row.storage_key = storage_key
            session.commit()
            record = self._to_file(row)
        self._publish(Updated(FILES, record))
        return record

    def delete_file(self, file_id: str) -> None:
        with self.Session() as session:
            row = session.get(FileRow, file_id)
            if not row:
                return
            owner = row.owner
            session.delete(row)
            session.commit()
        self._publish(Deleted(FILES, file_id, owner))

    def set_share(
        self, folder_ids: Iterable[str], file_ids: Iterable[str], token: Optional[str]
    ) -> tuple[list[FolderRecord], list[FileRecord]]:
        folder_ids, file_ids = list(folder_ids), list(file_ids)
        if not folder_ids and not file_ids:
            return [], []
        # One commit; an exception before it rolls both updates back on close.
        with self.Session() as session:
            if folder_ids:
                session.execute(
                    update(FolderRow)
                    .where(FolderRow.id.in_(folder_ids))
                    .values(public_share_id=token)
                )
            if file_ids:
                session.execute(
                    update(FileRow)
                    .where(FileRow.id.in_(file_ids))
                    .values(public_share_id=token)
                )
            session.commit()
            folders = [
                self._to_folder(row)
                for row in session.execute(
                    select(FolderRow)
                    .where(FolderRow.id.in_(folder_ids))
                    .order_by(FolderRow.created_at.asc())
                ).scalars()
            ]
            files = [
                self._to_file(row)
                for row in session.execute(
                    select(FileRow)
                    .where(FileRow.id.in_(file_ids))
                    .order_by(FileRow.created_at.asc())
                ).scalars()
            ]
        for folder in folders:
            self._publish(Updated(FOLDERS, folder))
        for record in files:
            self._publish(Updated(FILES, record))
        return folders, files

    def find_shared(self, token: str) -> tuple[list[FolderRecord], list[FileRecord]]:
        with self.Session() as session:
            folders = session.execute(
                select(FolderRow)
                .where(FolderRow.public_share_id == token)
                .order_by(FolderRow.created_at.asc())
            ).scalars()
            files = session.execute(
                select(FileRow)
                .where(FileRow.public_share_id == token)
                .order_by(FileRow.created_at.asc())
            ).scalars()
            return (
                [self._to_folder(row) for row in folders],
                [self._to_file(row) for row in files],
            )

    def record_orphan(self, orphan: OrphanRecord) -> None:
        with self.Session() as session:
            session.add(
                OrphanRow(
                    id=orphan.id,
                    kind=orphan.kind.value,
                    owner=orphan.owner,
                    file_id=orphan.file_id,
                    storage_key=orphan.storage_key,
                    new_storage_key=orphan.new_storage_key,
                    new_name=orphan.new_name,
                    detail=orphan.detail,
                    created_at=orphan.created_at,
                    resolved_at=orphan.resolved_at,
                )
            )
            session.commit()

    def list_orphans(self, include_resolved: bool = False) -> list[OrphanRecord]:
        with self.Session() as session:
            stmt = select(OrphanRow).order_by(OrphanRow.created_at.asc())
            if not include_resolved:
                stmt = stmt.where(OrphanRow.resolved_at.is_(None))
            return [
                OrphanRecord(
                    id=row.id,
                    kind=OrphanKind(row.kind),
                    owner=row.owner,
                    storage_key=row.storage_key,
                    file_id=row.file_id,
                    new_storage_key=row.new_storage_key,
                    new_name=row.new_name,
                    detail=row.detail or "",
                    created_at=row.created_at,
                    resolved_at=row.resolved_at,
                )
                for row in session.execute(stmt).scalars()
            ]

    def resolve_orphan(self, orphan_id: str) -> None:
        with self.Session() as session:
            row = session.get(OrphanRow, orphan_id)
            if not row:
                return
            row.resolved_at = time.time()
            session.commit()


def make_engine(database_url: str):
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection so worker threads see the same in-memory DB.
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        future=True,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


Base = declarative_base()


class FolderRow(Base):
    __tablename__ = "folders"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    owner = Column(String, nullable=False, index=True)
    parent_id = Column(String, nullable=True, index=True)
    public_share_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)


class FileRow(Base):
    __tablename__ = "files"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    owner = Column(String, nullable=False, index=True)
    folder_id = Column(String, nullable=True, index=True)
    storage_key = Column(String, nullable=False, unique=True)
    size_bytes = Column(BigInteger, nullable=True)
    public_share_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)


class OrphanRow(Base):
    __tablename__ = "orphans"

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    owner = Column(String, nullable=False, index=True)
    file_id = Column(String, nullable=True)
    storage_key = Column(String, nullable=False)
    new_storage_key = Column(String, nullable=True)
    new_name = Column(String, nullable=True)
    detail = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    resolved_at = Column(Float, nullable=True)
