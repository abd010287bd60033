"""
Record store for the task board and the shared expense tracker.
"""

from __future__ import annotations

import copy
import threading
import time
from typing import Dict, Optional, Protocol

from sqlalchemy import Column, Float, Integer, String, select
from sqlalchemy.orm import Session, sessionmaker

from tripkit.db import Base, make_engine, new_id
from tripkit.errors import NotFoundError
from tripkit.events import ChangeEvent, Inserted
from tripkit.feed import ChangeFeed
from tripkit.types import (
    BUDGETS,
    EXPENSES,
    BoardItem,
    BoardStatus,
    BudgetRecord,
    ExpenseRecord,
)


class PlannerStore(Protocol):
    def list_statuses(self, owner: str) -> list[BoardStatus]:
        ...

    def insert_statuses(
        self, owner: str, titles: list[tuple[str, int]]
    ) -> list[BoardStatus]:
        ...

    def list_board_items(self, owner: str) -> list[BoardItem]:
        ...

    def insert_board_item(
        self,
        owner: str,
        title: str,
        *,
        status_id: Optional[str] = None,
        due_date: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BoardItem:
        ...

    def update_board_item_status(
        self, item_id: str, status_id: Optional[str]
    ) -> BoardItem:
        ...

    def delete_board_item(self, item_id: str) -> None:
        ...

    def list_budgets(self) -> list[BudgetRecord]:
        ...

    def insert_budget(self, owner: str, title: str, amount: float) -> BudgetRecord:
        ...

    def list_expenses(self) -> list[ExpenseRecord]:
        ...

    def insert_expense(
        self,
        owner: str,
        title: str,
        amount: float,
        *,
        budget_id: Optional[str] = None,
        paid_by: Optional[str] = None,
    ) -> ExpenseRecord:
        ...


class InMemoryPlannerStore:
    """In-memory planner records for development and tests."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed
        self.statuses: Dict[str, BoardStatus] = {}
        self.items: Dict[str, BoardItem] = {}
        self.budgets: Dict[str, BudgetRecord] = {}
        self.expenses: Dict[str, ExpenseRecord] = {}
        self._lock = threading.Lock()

    def _publish(self, event: ChangeEvent) -> None:
        if self.feed is not None:
            self.feed.publish(event)

    def reset(self) -> None:
        with self._lock:
            self.statuses.clear()
            self.items.clear()
            self.budgets.clear()
            self.expenses.clear()

    def list_statuses(self, owner: str) -> list[BoardStatus]:
        rows = [s for s in self.statuses.values() if s.owner == owner]
        return [copy.copy(s) for s in sorted(rows, key=lambda s: s.position)]

    def insert_statuses(
        self, owner: str, titles: list[tuple[str, int]]
    ) -> list[BoardStatus]:
        created = [
            BoardStatus(id=new_id(), title=title, position=position, owner=owner)
            for title, position in titles
        ]
        with self._lock:
            for status in created:
                self.statuses[status.id] = status
        return [copy.copy(s) for s in sorted(created, key=lambda s: s.position)]

    def list_board_items(self, owner: str) -> list[BoardItem]:
        rows = [i for i in self.items.values() if i.owner == owner]
        return [copy.copy(i) for i in sorted(rows, key=lambda i: i.created_at)]

    def insert_board_item(
        self,
        owner: str,
        title: str,
        *,
        status_id: Optional[str] = None,
        due_date: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BoardItem:
        item = BoardItem(
            id=new_id(),
            title=title,
            owner=owner,
            status_id=status_id,
            due_date=due_date,
            description=description,
        )
        with self._lock:
            self.items[item.id] = item
        return copy.copy(item)

    def update_board_item_status(
        self, item_id: str, status_id: Optional[str]
    ) -> BoardItem:
        with self._lock:
            item = self.items.get(item_id)
            if not item:
                raise NotFoundError(f"Board item {item_id} not found")
            item.status_id = status_id
            return copy.copy(item)

    def delete_board_item(self, item_id: str) -> None:
        with self._lock:
            self.items.pop(item_id, None)

    def list_budgets(self) -> list[BudgetRecord]:
        return [
            copy.copy(b)
            for b in sorted(self.budgets.values(), key=lambda b: b.created_at)
        ]

    def insert_budget(self, owner: str, title: str, amount: float) -> BudgetRecord:
        budget = BudgetRecord(id=new_id(), title=title, amount=amount, owner=owner)
        with self._lock:
            self.budgets[budget.id] = budget
        self._publish(Inserted(BUDGETS, copy.copy(budget)))
        return copy.copy(budget)

    def list_expenses(self) -> list[ExpenseRecord]:
        return [
            copy.copy(e)
            for e in sorted(self.expenses.values(), key=lambda e: e.created_at)
        ]

    def insert_expense(
        self,
        owner: str,
        title: str,
        amount: float,
        *,
        budget_id: Optional[str] = None,
        paid_by: Optional[str] = None,
    ) -> ExpenseRecord:
        expense = ExpenseRecord(
            id=new_id(),
            title=title,
            amount=amount,
            owner=owner,
            budget_id=budget_id,
            paid_by=paid_by,
        )
        with self._lock:
            self.expenses[expense.id] = expense
        self._publish(Inserted(EXPENSES, copy.copy(expense)))
        return copy.copy(expense)


class SqlPlannerStore:
    """SQLAlchemy-backed planner records."""

    def __init__(self, database_url: str, feed: Optional[ChangeFeed] = None, engine=None):
        if not database_url and engine is None:
            raise ValueError("DATABASE_URL is required for SqlPlannerStore")
        self.feed = feed
        self.engine = engine or make_engine(database_url)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _publish(self, event: ChangeEvent) -> None:
        if self.feed is not None:
            self.feed.publish(event)

    @staticmethod
    def _to_item(row: "BoardItemRow") -> BoardItem:
        return BoardItem(
            id=row.id,
            title=row.title,
            owner=row.owner,
            status_id=row.status_id,
            description=row.description,
            due_date=row.due_date,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_budget(row: "BudgetRow") -> BudgetRecord:
        return BudgetRecord(
            id=row.id,
            title=row.title,
            amount=row.amount,
            owner=row.owner,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_expense(row: "ExpenseRow") -> ExpenseRecord:
        return ExpenseRecord(
            id=row.id,
            title=row.title,
            amount=row.amount,
            owner=row.owner,
            budget_id=row.budget_id,
            paid_by=row.paid_by,
            created_at=row.created_at,
        )

    def list_statuses(self, owner: str) -> list[BoardStatus]:
        with self.Session() as session:
            stmt = (
                select(BoardStatusRow)
                .where(BoardStatusRow.owner == owner)
                .order_by(BoardStatusRow.position.asc())
            )
            return [
                BoardStatus(id=row.id, title=row.title, position=row.position, owner=row.owner)
                for row in session.execute(stmt).scalars()
            ]

    def insert_statuses(
        self, owner: str, titles: list[tuple[str, int]]
    ) -> list[BoardStatus]:
        with self.Session() as session:
            rows = [
                BoardStatusRow(id=new_id(), title=title, position=position, owner=owner)
                for title, position in titles
            ]
            session.add_all(rows)
            session.commit()
            created = [
                BoardStatus(id=row.id, title=row.title, position=row.position, owner=row.owner)
                for row in rows
            ]
        return sorted(created, key=lambda s: s.position)

    def list_board_items(self, owner: str) -> list[BoardItem]:
        with self.Session() as session:
            stmt = (
                select(BoardItemRow)
                .where(BoardItemRow.owner == owner)
                .order_by(BoardItemRow.created_at.asc())
            )
            return [self._to_item(row) for row in session.execute(stmt).scalars()]

    def insert_board_item(
        self,
        owner: str,
        title: str,
        *,
        status_id: Optional[str] = None,
        due_date: Optional[str] = None,
        description: Optional[str] = None,
    ) -> BoardItem:
        with self.Session() as session:
            row = BoardItemRow(
                id=new_id(),
                title=title,
                owner=owner,
                status_id=status_id,
                due_date=due_date,
                description=description,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            return self._to_item(row)

    def update_board_item_status(
        self, item_id: str, status_id: Optional[str]
    ) -> BoardItem:
        with self.Session() as session:
            row = session.get(BoardItemRow, item_id)
            if not row:
                raise NotFoundError(f"Board item {item_id} not found")
            row.status_id = status_id
            session.commit()
            return self._to_item(row)

    def delete_board_item(self, item_id: str) -> None:
        with self.Session() as session:
            row = session.get(BoardItemRow, item_id)
            if row:
                session.delete(row)
                session.commit()

    def list_budgets(self) -> list[BudgetRecord]:
        with self.Session() as session:
            stmt = select(BudgetRow).order_by(BudgetRow.created_at.asc())
            return [self._to_budget(row) for row in session.execute(stmt).scalars()]

    def insert_budget(self, owner: str, title: str, amount: float) -> BudgetRecord:
        with self.Session() as session:
            row = BudgetRow(
                id=new_id(), title=title, amount=amount, owner=owner, created_at=time.time()
            )
            session.add(row)
            session.commit()
            record = self._to_budget(row)
        self._publish(Inserted(BUDGETS, record))
        return record

    def list_expenses(self) -> list[ExpenseRecord]:
        with self.Session() as session:
            stmt = select(ExpenseRow).order_by(ExpenseRow.created_at.asc())
            return [self._to_expense(row) for row in session.execute(stmt).scalars()]

    def insert_expense(
        self,
        owner: str,
        title: str,
        amount: float,
        *,
        budget_id: Optional[str] = None,
        paid_by: Optional[str] = None,
    ) -> ExpenseRecord:
        with self.Session() as session:
            row = ExpenseRow(
                id=new_id(),
                title=title,
                amount=amount,
                owner=owner,
                budget_id=budget_id,
                paid_by=paid_by,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            record = self._to_expense(row)
        self._publish(Inserted(EXPENSES, record))
        return record


class BoardStatusRow(Base):
    __tablename__ = "board_statuses"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    owner = Column(String, nullable=False, index=True)


class BoardItemRow(Base):
    __tablename__ = "board_items"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    owner = Column(String, nullable=False, index=True)
    status_id = Column(String, nullable=True)
    due_date = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class BudgetRow(Base):
    __tablename__ = "budgets"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    owner = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)


class ExpenseRow(Base):
    __tablename__ = "expenses"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    owner = Column(String, nullable=False, index=True)
    budget_id = Column(String, nullable=True, index=True)
    paid_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
