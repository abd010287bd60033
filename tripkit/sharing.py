"""
Public share links.

Sharing a folder tags the folder, every folder below it and every file in
those folders with the share token at share time. The viewer only ever
returns rows that carry the token, which confines navigation to the shared
subtree. Files added to a shared folder later are not shared automatically.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional

from tripkit.db import RecordStore
from tripkit.directory import DirectoryModel, file_kind
from tripkit.errors import GatewayWriteError, NotFoundError, ValidationError
from tripkit.storage import BlobStore
from tripkit.types import FileRecord, FolderRecord, ItemKind, ItemRef

logger = logging.getLogger(__name__)


def new_share_token() -> str:
    # uuid4 draws from os.urandom.
    return uuid.uuid4().hex


@dataclass
class ShareLink:
    token: str
    url: str
    folder_ids: list[str] = field(default_factory=list)
    file_ids: list[str] = field(default_factory=list)
    copied: bool = False
    # Set when the link could not be copied; the user selects it by hand.
    manual_copy_text: Optional[str] = None


class ShareLinkIssuer:
    def __init__(
        self,
        records: RecordStore,
        *,
        origin: str,
        clipboard: Optional[Callable[[str], None]] = None,
        opener: Optional[Callable[[str], None]] = None,
        token_factory: Callable[[], str] = new_share_token,
    ):
        self._records = records
        self.origin = origin.rstrip("/")
        self._clipboard = clipboard
        self._opener = opener
        self._token_factory = token_factory

    def url_for(self, token: str) -> str:
        return f"{self.origin}/share/{token}"

    @staticmethod
    def expand(model: DirectoryModel, items: Iterable[ItemRef]) -> tuple[list[str], list[str]]:
        """Selected rows plus, for folders, everything beneath them."""
        folder_ids: list[str] = []
        file_ids: list[str] = []
        for item in items:
            if item.kind is ItemKind.FOLDER and item.id in model.folders:
                for fid in [item.id, *model.descendant_folder_ids(item.id)]:
                    if fid not in folder_ids:
                        folder_ids.append(fid)
            elif item.kind is ItemKind.FILE and item.id in model.files:
                if item.id not in file_ids:
                    file_ids.append(item.id)
        for fid in folder_ids:
            for record in model.files_in(fid):
                if record.id not in file_ids:
                    file_ids.append(record.id)
        return folder_ids, file_ids

    async def share(self, model: DirectoryModel, items: Iterable[ItemRef]) -> ShareLink:
        folder_ids, file_ids = self.expand(model, items)
        if not folder_ids and not file_ids:
            raise ValidationError("Select files or folders to share")
        token = self._token_factory()
        try:
            folders, files = await asyncio.to_thread(
                self._records.set_share, folder_ids, file_ids, token
            )
        except Exception as exc:
            logger.warning("Share %s failed: %s", token, exc)
            raise GatewayWriteError(f"Share failed: {exc}") from exc
        if model.mounted:
            for record in files:
                model.files.confirm(record)
            for folder in folders:
                model.folders.confirm(folder)

        link = ShareLink(
            token=token,
            url=self.url_for(token),
            folder_ids=folder_ids,
            file_ids=file_ids,
        )
        self._deliver(link)
        logger.info(
            "Created share %s for %d folder(s) and %d file(s)",
            token,
            len(folder_ids),
            len(file_ids),
        )
        return link

    def _deliver(self, link: ShareLink) -> None:
        if self._clipboard is not None:
            try:
                self._clipboard(link.url)
                link.copied = True
            except Exception as exc:
                logger.info("Clipboard unavailable, falling back to manual copy: %s", exc)
        if not link.copied:
            link.manual_copy_text = link.url
        if self._opener is not None:
            try:
                self._opener(link.url)
            except Exception as exc:
                logger.warning("Could not open %s: %s", link.url, exc)


@dataclass
class SharedFile:
    record: FileRecord
    url: str
    kind: str


@dataclass
class SharedListing:
    token: str
    folder: Optional[FolderRecord]
    folders: list[FolderRecord]
    files: list[SharedFile]


class ShareViewer:
    """Read-only, unauthenticated resolution of share tokens."""

    def __init__(self, records: RecordStore, blobs: BlobStore):
        self._records = records
        self._blobs = blobs

    def _shared_file(self, record: FileRecord) -> SharedFile:
        # Owner identity stays private to viewers.
        public = replace(record, owner="")
        return SharedFile(public, self._blobs.public_url(record.storage_key), file_kind(record.name))

    async def _load(self, token: str) -> tuple[list[FolderRecord], list[FileRecord]]:
        if not token:
            raise NotFoundError("Share not found")
        folders, files = await asyncio.to_thread(self._records.find_shared, token)
        if not folders and not files:
            raise NotFoundError("Share not found")
        return folders, files

    async def list_shared(self, token: str) -> SharedListing:
        """The share's top level: items whose parent is not part of the share."""
        folders, files = await self._load(token)
        shared_ids = {f.id for f in folders}
        return SharedListing(
            token=token,
            folder=None,
            folders=[replace(f, owner="") for f in folders if f.parent_id not in shared_ids],
            files=[self._shared_file(f) for f in files if f.folder_id not in shared_ids],
        )

    async def open_folder(self, token: str, folder_id: str) -> SharedListing:
        folders, files = await self._load(token)
        folder = next((f for f in folders if f.id == folder_id), None)
        if folder is None:
            raise NotFoundError("Folder is not part of this share")
        return SharedListing(
            token=token,
            folder=replace(folder, owner=""),
            folders=[replace(f, owner="") for f in folders if f.parent_id == folder_id],
            files=[self._shared_file(f) for f in files if f.folder_id == folder_id],
        )

    async def all_items(self, token: str) -> tuple[list[FolderRecord], list[FileRecord]]:
        """Every row carrying ``token``, unfiltered."""
        return await self._load(token)
