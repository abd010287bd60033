"""
HTTP and WebSocket routes for the trip planner API.

Each request mounts a short-lived view (directory, board, expenses) for the
caller, applies one action and returns the resulting state. The media
WebSocket keeps a directory mounted with realtime sync for as long as the
socket is open.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)

from tripkit.board import TaskBoard
from tripkit.config import Settings
from tripkit.dependencies import (
    get_app_settings,
    get_gateway,
    get_identity,
    get_share_issuer,
    get_share_viewer,
)
from tripkit.directory import DirectoryModel, file_kind
from tripkit.errors import NotAuthenticatedError, PartialBatchError, TripkitError
from tripkit.expenses import ExpenseTracker
from tripkit.gateway import Gateway
from tripkit.identity import StaticIdentity, identity_from_headers
from tripkit.schemas import (
    AddBoardItemRequest,
    AddBudgetRequest,
    AddExpenseRequest,
    BatchFailureOut,
    BoardItemOut,
    BoardResponse,
    BoardStatusOut,
    BudgetOut,
    CreateFolderRequest,
    DeleteSelectionResponse,
    DetailsResponse,
    DirectoryListing,
    ExpenseOut,
    ExpensesResponse,
    FileDetailsOut,
    FileOut,
    FolderOut,
    MoveBoardItemRequest,
    OkResponse,
    PerUserTotal,
    RenameFileRequest,
    SelectionRequest,
    SharedFileOut,
    SharedFolderOut,
    SharedListingResponse,
    ShareResponse,
    TotalsOut,
    UploadResponse,
)
from tripkit.selection import SelectionController
from tripkit.sharing import ShareLinkIssuer, SharedListing, ShareViewer
from tripkit.storage import BlobStore
from tripkit.types import BatchFailure, FileRecord, FolderRecord, ItemKind, ItemRef

logger = logging.getLogger(__name__)

router = APIRouter()


def _folder_out(folder: FolderRecord) -> FolderOut:
    return FolderOut(
        id=folder.id,
        name=folder.name,
        parent_id=folder.parent_id,
        public_share_id=folder.public_share_id,
    )


def _file_out(record: FileRecord, blobs: BlobStore) -> FileOut:
    return FileOut(
        id=record.id,
        name=record.name,
        folder_id=record.folder_id,
        storage_key=record.storage_key,
        size_bytes=record.size_bytes,
        public_share_id=record.public_share_id,
        owner=record.owner,
        url=blobs.public_url(record.storage_key),
        kind=file_kind(record.name),
    )


def _failures_out(failures: list[BatchFailure]) -> list[BatchFailureOut]:
    return [
        BatchFailureOut(
            item=f.item,
            error=f.message,
            code=getattr(f.error, "code", "error"),
        )
        for f in failures
    ]


def _listing(model: DirectoryModel, blobs: BlobStore, query: str = "") -> DirectoryListing:
    current = model.current_folder
    files = model.search_files(query) if query.strip() else model.child_files
    return DirectoryListing(
        current_folder=_folder_out(current) if current else None,
        breadcrumbs=[_folder_out(f) for f in model.breadcrumbs()],
        folders=[_folder_out(f) for f in model.child_folders],
        files=[_file_out(f, blobs) for f in files],
        path_prefix=model.path_prefix(model.current_folder_id),
    )


async def _open_directory(
    gateway: Gateway,
    identity: StaticIdentity,
    *,
    folder_id: Optional[str] = None,
    confirmed: bool = False,
) -> DirectoryModel:
    model = DirectoryModel(gateway, identity=identity, confirm=lambda _prompt: confirmed)
    await model.mount(realtime=False)
    if folder_id:
        model.enter_folder(folder_id)
    return model


def _shared_out(listing: SharedListing) -> SharedListingResponse:
    return SharedListingResponse(
        token=listing.token,
        folder=SharedFolderOut(id=listing.folder.id, name=listing.folder.name)
        if listing.folder
        else None,
        folders=[SharedFolderOut(id=f.id, name=f.name) for f in listing.folders],
        files=[
            SharedFileOut(
                id=f.record.id,
                name=f.record.name,
                url=f.url,
                kind=f.kind,
                size_bytes=f.record.size_bytes,
            )
            for f in listing.files
        ],
    )


# -- media ------------------------------------------------------------------


@router.get("/media", response_model=DirectoryListing)
async def list_media(
    folder_id: Optional[str] = Query(None),
    q: str = Query("", max_length=255),
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    model = await _open_directory(gateway, identity, folder_id=folder_id)
    return _listing(model, gateway.blobs, q)


@router.post("/media/folders", response_model=FolderOut, status_code=201)
async def create_folder(
    payload: CreateFolderRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    model = await _open_directory(gateway, identity)
    folder = await model.create_folder(payload.name, payload.parent_id)
    return _folder_out(folder)


@router.delete("/media/folders/{folder_id}", response_model=OkResponse)
async def delete_folder(
    folder_id: str,
    confirm: bool = Query(False),
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    model = await _open_directory(gateway, identity, confirmed=confirm)
    if not await model.delete_folder(folder_id):
        raise HTTPException(status_code=400, detail="Deletion must be confirmed")
    return OkResponse(status="ok")


@router.post("/media/files", response_model=UploadResponse)
async def upload_files(
    files: list[UploadFile] = File(...),
    folder_id: Optional[str] = Form(None),
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    model = await _open_directory(gateway, identity)
    uploads = [(upload.filename or "", await upload.read()) for upload in files]
    result = await model.upload_files(uploads, folder_id or None)
    if result.all_failed:
        raise PartialBatchError("No files were uploaded", result)
    return UploadResponse(
        uploaded=[_file_out(f, gateway.blobs) for f in result.succeeded],
        failures=_failures_out(result.failures),
    )


@router.patch("/media/files/{file_id}", response_model=FileOut)
async def rename_file(
    file_id: str,
    payload: RenameFileRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    model = await _open_directory(gateway, identity)
    updated = await model.rename_file(file_id, payload.name)
    return _file_out(updated or model.files.get(file_id), gateway.blobs)


@router.delete("/media/files/{file_id}", response_model=OkResponse)
async def delete_file(
    file_id: str,
    confirm: bool = Query(False),
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    model = await _open_directory(gateway, identity, confirmed=confirm)
    if not await model.delete_file(file_id):
        raise HTTPException(status_code=400, detail="Deletion must be confirmed")
    return OkResponse(status="ok")


async def _select(
    payload: SelectionRequest,
    gateway: Gateway,
    identity: StaticIdentity,
    settings: Settings,
    *,
    issuer: Optional[ShareLinkIssuer] = None,
    confirmed: bool = False,
) -> SelectionController:
    model = await _open_directory(
        gateway, identity, folder_id=payload.folder_id, confirmed=confirmed
    )
    controller = SelectionController(
        model, issuer=issuer, long_press_seconds=settings.long_press_ms / 1000
    )
    controller.select_all([ItemRef(ItemKind(item.kind), item.id) for item in payload.items])
    return controller


@router.post("/media/selection/delete", response_model=DeleteSelectionResponse)
async def delete_selection(
    payload: SelectionRequest,
    confirm: bool = Query(False),
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
):
    if not confirm:
        raise HTTPException(status_code=400, detail="Deletion must be confirmed")
    controller = await _select(payload, gateway, identity, settings, confirmed=True)
    result = await controller.delete_selected()
    return DeleteSelectionResponse(
        deleted=result.succeeded, failures=_failures_out(result.failures)
    )


@router.post("/media/selection/share", response_model=ShareResponse)
async def share_selection(
    payload: SelectionRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
    issuer: ShareLinkIssuer = Depends(get_share_issuer),
    settings: Settings = Depends(get_app_settings),
):
    controller = await _select(payload, gateway, identity, settings, issuer=issuer)
    link = await controller.share_selected()
    return ShareResponse(
        token=link.token,
        url=link.url,
        folder_ids=link.folder_ids,
        file_ids=link.file_ids,
    )


@router.post("/media/selection/details", response_model=DetailsResponse)
async def selection_details(
    payload: SelectionRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
):
    controller = await _select(payload, gateway, identity, settings)
    return DetailsResponse(
        files=[
            FileDetailsOut(
                id=d.id,
                name=d.name,
                size_bytes=d.size_bytes,
                size_kb=d.size_kb,
                owner=d.owner,
                storage_key=d.storage_key,
            )
            for d in controller.details()
        ]
    )


@router.websocket("/media/ws")
async def media_socket(websocket: WebSocket):
    """
    Live directory listing.

    Server -> client: a ``DirectoryListing`` after connect and after every
    applied change. Client -> server: ``{"action": "enter", "folder_id": ...}``,
    ``{"action": "up"}`` or ``{"action": "root"}``.
    """
    gateway: Gateway = websocket.app.state.gateway
    identity = identity_from_headers(websocket.headers)
    changed: asyncio.Queue = asyncio.Queue()
    model = DirectoryModel(
        gateway, identity=identity, on_change=lambda event: changed.put_nowait(event)
    )
    try:
        await model.mount(realtime=True)
    except NotAuthenticatedError:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    async def send_listing() -> None:
        await websocket.send_json(_listing(model, gateway.blobs).model_dump())

    async def forward_changes() -> None:
        while True:
            await changed.get()
            await send_listing()

    forwarder = asyncio.create_task(forward_changes())
    try:
        await send_listing()
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                message = None
            if not isinstance(message, dict):
                await websocket.send_json(
                    {"error": "invalid", "detail": "Frames must be JSON objects"}
                )
                continue
            action = message.get("action")
            try:
                if action == "enter":
                    model.enter_folder(message.get("folder_id"))
                elif action == "up":
                    model.go_up()
                elif action == "root":
                    model.go_root()
                else:
                    await websocket.send_json({"error": "invalid", "detail": f"Unknown action {action!r}"})
                    continue
            except TripkitError as exc:
                await websocket.send_json({"error": exc.code, "detail": str(exc)})
                continue
            await send_listing()
    except WebSocketDisconnect:
        logger.debug("Media socket closed for %s", model.owner.id if model.owner else None)
    finally:
        forwarder.cancel()
        await model.unmount()


# -- public shares ----------------------------------------------------------


@router.get("/share/{token}", response_model=SharedListingResponse)
async def view_share(token: str, viewer: ShareViewer = Depends(get_share_viewer)):
    return _shared_out(await viewer.list_shared(token))


@router.get("/share/{token}/folders/{folder_id}", response_model=SharedListingResponse)
async def view_shared_folder(
    token: str, folder_id: str, viewer: ShareViewer = Depends(get_share_viewer)
):
    return _shared_out(await viewer.open_folder(token, folder_id))


# -- board ------------------------------------------------------------------


def _board_out(board: TaskBoard) -> BoardResponse:
    return BoardResponse(
        statuses=[
            BoardStatusOut(id=s.id, title=s.title, position=s.position)
            for s in board.statuses
        ],
        items=[
            BoardItemOut(
                id=i.id,
                title=i.title,
                description=i.description,
                status_id=i.status_id,
                status=board.status_title(i.status_id),
                due_date=i.due_date,
            )
            for i in board.items
        ],
    )


async def _open_board(gateway: Gateway, identity: StaticIdentity) -> TaskBoard:
    board = TaskBoard(gateway, identity=identity)
    await board.load()
    return board


@router.get("/board", response_model=BoardResponse)
async def get_board(
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    return _board_out(await _open_board(gateway, identity))


@router.post("/board/items", response_model=BoardResponse, status_code=201)
async def add_board_item(
    payload: AddBoardItemRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    board = await _open_board(gateway, identity)
    await board.add_item(payload.title, payload.due_date, payload.description)
    return _board_out(board)


@router.patch("/board/items/{item_id}", response_model=BoardResponse)
async def move_board_item(
    item_id: str,
    payload: MoveBoardItemRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    board = await _open_board(gateway, identity)
    await board.move_item(item_id, payload.status_id)
    return _board_out(board)


@router.delete("/board/items/{item_id}", response_model=BoardResponse)
async def remove_board_item(
    item_id: str,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    board = await _open_board(gateway, identity)
    await board.remove_item(item_id)
    return _board_out(board)


# -- expenses ---------------------------------------------------------------


async def _open_tracker(gateway: Gateway, identity: StaticIdentity) -> ExpenseTracker:
    tracker = ExpenseTracker(gateway, identity=identity)
    await tracker.mount(realtime=False)
    return tracker


def _expenses_out(tracker: ExpenseTracker, budget_id: Optional[str] = None) -> ExpensesResponse:
    totals = tracker.totals(budget_id)
    return ExpensesResponse(
        budgets=[
            BudgetOut(id=b.id, title=b.title, amount=b.amount)
            for b in tracker.budgets.rows()
        ],
        expenses=[
            ExpenseOut(
                id=e.id,
                title=e.title,
                amount=e.amount,
                budget_id=e.budget_id,
                paid_by=e.paid_by,
            )
            for e in tracker.expenses_for(budget_id)
        ],
        totals=TotalsOut(
            budget_amount=totals.budget_amount,
            total_expense=totals.total_expense,
            balance=totals.balance,
        ),
        per_user=[
            PerUserTotal(user_id=user_id, total=total)
            for user_id, total in tracker.per_user_totals().items()
        ],
    )


@router.get("/expenses", response_model=ExpensesResponse)
async def list_expenses(
    budget_id: Optional[str] = Query(None),
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    tracker = await _open_tracker(gateway, identity)
    return _expenses_out(tracker, budget_id)


@router.post("/budgets", response_model=BudgetOut, status_code=201)
async def add_budget(
    payload: AddBudgetRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    tracker = await _open_tracker(gateway, identity)
    budget = await tracker.add_budget(payload.title, payload.amount)
    return BudgetOut(id=budget.id, title=budget.title, amount=budget.amount)


@router.post("/expenses", response_model=ExpenseOut, status_code=201)
async def add_expense(
    payload: AddExpenseRequest,
    gateway: Gateway = Depends(get_gateway),
    identity: StaticIdentity = Depends(get_identity),
):
    tracker = await _open_tracker(gateway, identity)
    expense = await tracker.add_expense(payload.title, payload.amount, payload.budget_id)
    return ExpenseOut(
        id=expense.id,
        title=expense.title,
        amount=expense.amount,
        budget_id=expense.budget_id,
        paid_by=expense.paid_by,
    )
