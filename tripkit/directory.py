"""
In-memory folder/file tree for one owner, backed by the gateway.

The model loads the owner's rows once on ``mount``, keeps them current via
realtime adapters, and routes every user action through the gateway before
touching local state. Gateway clients are synchronous; calls are pushed to a
worker thread with ``asyncio.to_thread`` so the event loop stays responsive,
and local state is only ever mutated on the loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Iterable, Optional

from tripkit.db import new_id
from tripkit.errors import (
    BlobOperationError,
    FolderNotEmptyError,
    GatewayWriteError,
    NotAuthenticatedError,
    NotFoundError,
    OrphanedStateError,
    TripkitError,
    ValidationError,
)
from tripkit.events import ChangeEvent
from tripkit.gateway import Gateway
from tripkit.identity import Identity
from tripkit.realtime import RealtimeSyncAdapter
from tripkit.reconciler import Reconciler
from tripkit.types import (
    FILES,
    FOLDERS,
    BatchFailure,
    BatchResult,
    FileRecord,
    FolderRecord,
    OrphanKind,
    OrphanRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif")
VIDEO_EXTENSIONS = (".mp4", ".webm", ".ogg", ".mov")


def _decline(prompt: str) -> bool:
    return False


def file_kind(name: str) -> str:
    lower = name.lower()
    if lower.endswith(IMAGE_EXTENSIONS):
        return "image"
    if lower.endswith(VIDEO_EXTENSIONS):
        return "video"
    if lower.endswith(".pdf"):
        return "pdf"
    return "other"


def _clean_name(value: Optional[str], what: str) -> str:
    name = (value or "").strip()
    if not name:
        raise ValidationError(f"{what} name is required")
    if "/" in name:
        raise ValidationError(f"{what} name cannot contain '/'")
    return name


def _key_nonce() -> str:
    return new_id()[:8]


def derive_storage_key(
    owner: str, path_prefix: str, name: str, timestamp_ms: int, nonce: str
) -> str:
    """``<owner>/<folder path>/<epoch-ms>-<nonce>_<name>``; the path may be empty."""
    return f"{owner}/{path_prefix}{timestamp_ms}-{nonce}_{name}"


def renamed_storage_key(storage_key: str, new_name: str, timestamp_ms: int, nonce: str) -> str:
    prefix, _, _ = storage_key.rpartition("/")
    leaf = f"{timestamp_ms}-{nonce}_{new_name}"
    return f"{prefix}/{leaf}" if prefix else leaf


class DirectoryModel:
    def __init__(
        self,
        gateway: Gateway,
        *,
        identity: Identity,
        confirm: Confirm = _decline,
        clock: Callable[[], float] = time.time,
        on_change: Optional[Callable[[ChangeEvent], None]] = None,
    ):
        self._gateway = gateway
        self._records = gateway.records
        self._blobs = gateway.blobs
        self._identity = identity
        self._confirm = confirm
        self._clock = clock
        self._on_change = on_change
        self.folders: Reconciler[FolderRecord] = Reconciler(FOLDERS)
        self.files: Reconciler[FileRecord] = Reconciler(FILES)
        self.current_folder_id: Optional[str] = None
        self.owner: Optional[UserRecord] = None
        self._mounted = False
        self._adapters: list[RealtimeSyncAdapter] = []
        self._navigation_listeners: list[Callable[[Optional[str]], None]] = []

    # -- lifecycle -----------------------------------------------------

    @property
    def mounted(self) -> bool:
        return self._mounted

    async def mount(self, *, realtime: bool = True) -> None:
        user = self._require_user()
        folders, files = await asyncio.gather(
            asyncio.to_thread(self._records.list_folders, user.id),
            asyncio.to_thread(self._records.list_files, user.id),
        )
        self.owner = user
        self.folders.reset(folders)
        self.files.reset(files)
        self._mounted = True
        if realtime:
            for reconciler in (self.folders, self.files):
                adapter = RealtimeSyncAdapter(
                    self._gateway.feed,
                    reconciler,
                    owner=user.id,
                    on_change=self._handle_remote_change,
                )
                await adapter.start()
                self._adapters.append(adapter)
        logger.debug(
            "Mounted directory for %s: %d folders, %d files",
            user.id,
            len(folders),
            len(files),
        )

    async def unmount(self) -> None:
        self._mounted = False
        adapters, self._adapters = self._adapters, []
        for adapter in adapters:
            await adapter.stop()

    def _handle_remote_change(self, event: ChangeEvent) -> None:
        if event.table == FOLDERS and event.id == self.current_folder_id:
            if self.current_folder is None:
                # Current folder was deleted elsewhere.
                self._navigate(None)
        if self._on_change is not None:
            self._on_change(event)

    def _require_user(self) -> UserRecord:
        user = self._identity.current_user()
        if user is None:
            raise NotAuthenticatedError("Sign in to manage media")
        return user

    def _still_mounted(self, action: str) -> bool:
        if not self._mounted:
            logger.debug("Discarding %s result: directory unmounted", action)
        return self._mounted

    # -- derived views -------------------------------------------------

    @property
    def current_folder(self) -> Optional[FolderRecord]:
        if self.current_folder_id is None:
            return None
        return self.folders.get(self.current_folder_id)

    @property
    def child_folders(self) -> list[FolderRecord]:
        return self.folders_in(self.current_folder_id)

    @property
    def child_files(self) -> list[FileRecord]:
        return self.files_in(self.current_folder_id)

    def folders_in(self, parent_id: Optional[str]) -> list[FolderRecord]:
        return [f for f in self.folders.rows() if f.parent_id == parent_id]

    def files_in(self, folder_id: Optional[str]) -> list[FileRecord]:
        return [f for f in self.files.rows() if f.folder_id == folder_id]

    def search_files(self, query: str) -> list[FileRecord]:
        """Files of the current folder whose name contains ``query``, newest first."""
        needle = query.strip().lower()
        rows = [f for f in self.child_files if needle in f.name.lower()]
        return sorted(rows, key=lambda f: f.created_at, reverse=True)

    def breadcrumbs(self, folder_id: Optional[str] = None) -> list[FolderRecord]:
        """Folders from the root down to ``folder_id`` (default: current)."""
        crumbs: list[FolderRecord] = []
        seen: set[str] = set()
        node = self.folders.get(folder_id or self.current_folder_id or "")
        while node is not None and node.id not in seen:
            seen.add(node.id)
            crumbs.insert(0, node)
            node = self.folders.get(node.parent_id) if node.parent_id else None
        return crumbs

    def descendant_folder_ids(self, folder_id: str) -> list[str]:
        found: list[str] = []
        pending = [folder_id]
        while pending:
            parent = pending.pop()
            for child in self.folders_in(parent):
                if child.id not in found:
                    found.append(child.id)
                    pending.append(child.id)
        return found

    def path_prefix(self, folder_id: Optional[str]) -> str:
        names = [crumb.name for crumb in self.breadcrumbs(folder_id)] if folder_id else []
        return "".join(f"{name}/" for name in names)

    # -- navigation ----------------------------------------------------

    def add_navigation_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        self._navigation_listeners.append(listener)

    def _navigate(self, folder_id: Optional[str]) -> None:
        self.current_folder_id = folder_id
        for listener in self._navigation_listeners:
            listener(folder_id)

    def enter_folder(self, folder_id: Optional[str]) -> None:
        if folder_id is not None and folder_id not in self.folders:
            raise NotFoundError("Folder not found")
        self._navigate(folder_id)

    def go_up(self) -> None:
        current = self.current_folder
        self._navigate(current.parent_id if current else None)

    def go_root(self) -> None:
        self._navigate(None)

    # -- folders -------------------------------------------------------

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> FolderRecord:
        user = self._require_user()
        clean = _clean_name(name, "Folder")
        if parent_id is not None and parent_id not in self.folders:
            raise NotFoundError("Parent folder not found")
        try:
            record = await asyncio.to_thread(
                self._records.insert_folder, user.id, clean, parent_id
            )
        except Exception as exc:
            logger.warning("Could not create folder %r: %s", clean, exc)
            raise GatewayWriteError(f"Could not create folder: {exc}") from exc
        if self._still_mounted("create_folder"):
            self.folders.confirm(record, inserted=True)
        return record

    async def delete_folder(self, folder_id: str) -> bool:
        folder = self.folders.get(folder_id)
        if folder is None:
            raise NotFoundError("Folder not found")
        if not self._confirm(f"Delete {folder.name}?"):
            return False
        await self._delete_folder(folder)
        return True

    async def _delete_folder(self, folder: FolderRecord) -> None:
        if self.folders_in(folder.id) or self.files_in(folder.id):
            raise FolderNotEmptyError("Folder is not empty")
        try:
            await asyncio.to_thread(self._records.delete_folder, folder.id)
        except Exception as exc:
            logger.warning("Could not delete folder %s: %s", folder.id, exc)
            raise GatewayWriteError(f"Delete failed: {exc}") from exc
        if self._still_mounted("delete_folder"):
            self.folders.discard(folder.id)
            if self.current_folder_id == folder.id:
                self._navigate(None)

    # -- files ---------------------------------------------------------

    async def upload_file(
        self, name: str, data: bytes, folder_id: Optional[str] = None
    ) -> FileRecord:
        user = self._require_user()
        clean = _clean_name(name, "File")
        if folder_id is not None and folder_id not in self.folders:
            raise NotFoundError("Folder not found")
        storage_key = derive_storage_key(
            user.id, self.path_prefix(folder_id), clean, int(self._clock() * 1000), _key_nonce()
        )
        try:
            await asyncio.to_thread(self._blobs.put, storage_key, data)
        except Exception as exc:
            logger.warning("Blob upload failed for %s: %s", storage_key, exc)
            raise BlobOperationError(f"Upload of {clean} failed: {exc}") from exc
        try:
            record = await asyncio.to_thread(
                self._records.insert_file,
                user.id,
                clean,
                storage_key,
                folder_id=folder_id,
                size_bytes=len(data),
            )
        except Exception as exc:
            orphan_id = await self._record_orphan(
                OrphanKind.BLOB_WITHOUT_ROW, user.id, storage_key, detail=str(exc)
            )
            raise OrphanedStateError(
                f"{clean} was stored but its record could not be saved: {exc}",
                orphan_id=orphan_id,
            ) from exc
        if self._still_mounted("upload_file"):
            self.files.confirm(record, inserted=True)
        return record

    async def upload_files(
        self, uploads: Iterable[tuple[str, bytes]], folder_id: Optional[str] = None
    ) -> BatchResult[FileRecord]:
        """Upload each file in turn; one failure does not stop the rest."""
        result: BatchResult[FileRecord] = BatchResult()
        for name, data in uploads:
            try:
                result.succeeded.append(await self.upload_file(name, data, folder_id))
            except TripkitError as exc:
                logger.warning("Upload of %s failed: %s", name, exc)
                result.failures.append(BatchFailure(item=name, error=exc))
        return result

    async def rename_file(self, file_id: str, new_name: Optional[str]) -> Optional[FileRecord]:
        record = self.files.get(file_id)
        if record is None:
            raise NotFoundError("File not found")
        clean = (new_name or "").strip()
        if not clean or clean == record.name:
            return None
        clean = _clean_name(clean, "File")
        new_key = renamed_storage_key(
            record.storage_key, clean, int(self._clock() * 1000), _key_nonce()
        )

        self.files.stage(replace(record, name=clean, storage_key=new_key))
        try:
            await asyncio.to_thread(self._blobs.move, record.storage_key, new_key)
        except Exception as exc:
            self.files.rollback(file_id)
            logger.warning("Blob move failed for %s: %s", record.storage_key, exc)
            raise BlobOperationError(f"Rename failed: {exc}") from exc
        try:
            updated = await asyncio.to_thread(
                self._records.update_file, file_id, name=clean, storage_key=new_key
            )
        except Exception as exc:
            self.files.rollback(file_id)
            orphan_id = await self._record_orphan(
                OrphanKind.STALE_STORAGE_KEY,
                record.owner,
                record.storage_key,
                file_id=file_id,
                new_storage_key=new_key,
                new_name=clean,
                detail=str(exc),
            )
            raise OrphanedStateError(
                f"{record.name} was moved but its record still points at the old location: {exc}",
                orphan_id=orphan_id,
            ) from exc
        if self._still_mounted("rename_file"):
            self.files.confirm(updated)
        return updated

    async def delete_file(self, file_id: str) -> bool:
        record = self.files.get(file_id)
        if record is None:
            raise NotFoundError("File not found")
        if not self._confirm(f"Delete {record.name}?"):
            return False
        await self._delete_file(record)
        return True

    async def _delete_file(self, record: FileRecord) -> None:
        try:
            await asyncio.to_thread(self._blobs.delete, record.storage_key)
        except Exception as exc:
            logger.warning("Blob delete failed for %s: %s", record.storage_key, exc)
            raise BlobOperationError(f"Delete failed: {exc}") from exc
        try:
            await asyncio.to_thread(self._records.delete_file, record.id)
        except Exception as exc:
            orphan_id = await self._record_orphan(
                OrphanKind.ROW_WITHOUT_BLOB,
                record.owner,
                record.storage_key,
                file_id=record.id,
                detail=str(exc),
            )
            raise OrphanedStateError(
                f"{record.name} was removed from storage but its record remains: {exc}",
                orphan_id=orphan_id,
            ) from exc
        if self._still_mounted("delete_file"):
            self.files.discard(record.id)

    async def delete_items(
        self, folder_ids: Iterable[str], file_ids: Iterable[str]
    ) -> BatchResult[str]:
        """
        Delete files first, then folders, without further confirmation.

        Files go first so a folder emptied by the same batch can be removed.
        """
        result: BatchResult[str] = BatchResult()
        for file_id in file_ids:
            record = self.files.get(file_id)
            if record is None:
                continue
            try:
                await self._delete_file(record)
                result.succeeded.append(file_id)
            except TripkitError as exc:
                result.failures.append(BatchFailure(item=record.name, error=exc))
        # Children before parents.
        folders = [self.folders.get(fid) for fid in folder_ids]
        folders = [f for f in folders if f is not None]
        folders.sort(key=lambda f: len(self.breadcrumbs(f.id)), reverse=True)
        for folder in folders:
            try:
                await self._delete_folder(folder)
                result.succeeded.append(folder.id)
            except TripkitError as exc:
                result.failures.append(BatchFailure(item=folder.name, error=exc))
        return result

    def confirm(self, prompt: str) -> bool:
        return self._confirm(prompt)

    # -- orphans -------------------------------------------------------

    async def _record_orphan(
        self,
        kind: OrphanKind,
        owner: str,
        storage_key: str,
        *,
        file_id: Optional[str] = None,
        new_storage_key: Optional[str] = None,
        new_name: Optional[str] = None,
        detail: str = "",
    ) -> Optional[str]:
        orphan = OrphanRecord(
            id=new_id(),
            kind=kind,
            owner=owner,
            storage_key=storage_key,
            file_id=file_id,
            new_storage_key=new_storage_key,
            new_name=new_name,
            detail=detail,
        )
        logger.error(
            "Orphaned media state %s (%s) for key %s: %s",
            orphan.id,
            kind.value,
            storage_key,
            detail,
        )
        try:
            await asyncio.to_thread(self._records.record_orphan, orphan)
        except Exception:
            logger.exception("Could not write orphan ledger entry %s", orphan.id)
            return None
        return orphan.id
