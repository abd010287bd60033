"""
Pydantic schemas for the trip planner HTTP API.
"""

from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, Field


class FolderOut(BaseModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    public_share_id: Optional[str] = None


class FileOut(BaseModel):
    id: str
    name: str
    folder_id: Optional[str] = None
    storage_key: str
    size_bytes: Optional[int] = None
    public_share_id: Optional[str] = None
    owner: str
    url: str
    kind: str


class DirectoryListing(BaseModel):
    current_folder: Optional[FolderOut] = None
    breadcrumbs: list[FolderOut]
    folders: list[FolderOut]
    files: list[FileOut]
    path_prefix: str


class CreateFolderRequest(BaseModel):
    name: str = Field(..., max_length=255)
    parent_id: Optional[str] = None


class RenameFileRequest(BaseModel):
    name: str = Field(..., max_length=255)


class BatchFailureOut(BaseModel):
    item: str
    error: str
    code: str


class UploadResponse(BaseModel):
    uploaded: list[FileOut]
    failures: list[BatchFailureOut]


class ItemRefIn(BaseModel):
    kind: Literal["folder", "file"]
    id: str


class SelectionRequest(BaseModel):
    folder_id: Optional[str] = None
    items: list[ItemRefIn] = Field(..., min_length=1)


class DeleteSelectionResponse(BaseModel):
    deleted: list[str]
    failures: list[BatchFailureOut]


class ShareResponse(BaseModel):
    token: str
    url: str
    folder_ids: list[str]
    file_ids: list[str]


class FileDetailsOut(BaseModel):
    id: str
    name: str
    size_bytes: Optional[int] = None
    size_kb: str
    owner: str
    storage_key: str


class DetailsResponse(BaseModel):
    files: list[FileDetailsOut]


class SharedFileOut(BaseModel):
    id: str
    name: str
    url: str
    kind: str
    size_bytes: Optional[int] = None


class SharedFolderOut(BaseModel):
    id: str
    name: str


class SharedListingResponse(BaseModel):
    token: str
    folder: Optional[SharedFolderOut] = None
    folders: list[SharedFolderOut]
    files: list[SharedFileOut]


class BoardStatusOut(BaseModel):
    id: str
    title: str
    position: int


class BoardItemOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status_id: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[str] = None


class BoardResponse(BaseModel):
    statuses: list[BoardStatusOut]
    items: list[BoardItemOut]


class AddBoardItemRequest(BaseModel):
    title: str = Field(..., max_length=512)
    due_date: Optional[date] = None
    description: Optional[str] = None


class MoveBoardItemRequest(BaseModel):
    status_id: Optional[str] = None


class BudgetOut(BaseModel):
    id: str
    title: str
    amount: float


class ExpenseOut(BaseModel):
    id: str
    title: str
    amount: float
    budget_id: Optional[str] = None
    paid_by: Optional[str] = None


class TotalsOut(BaseModel):
    budget_amount: float
    total_expense: float
    balance: float


class PerUserTotal(BaseModel):
    user_id: str
    total: float


class ExpensesResponse(BaseModel):
    budgets: list[BudgetOut]
    expenses: list[ExpenseOut]
    totals: TotalsOut
    per_user: list[PerUserTotal]


class AddBudgetRequest(BaseModel):
    title: str = Field(..., max_length=255)
    amount: float


class AddExpenseRequest(BaseModel):
    title: str = Field(..., max_length=255)
    amount: float
    budget_id: Optional[str] = None


class OkResponse(BaseModel):
    status: Literal["ok"]


class ErrorResponse(BaseModel):
    detail: str
    error: str
    orphaned: bool = False
    failures: list[BatchFailureOut] = Field(default_factory=list)
