"""
Shared budgets and expenses, kept live through the change feed.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from tripkit.errors import GatewayWriteError, NotAuthenticatedError, NotFoundError, ValidationError
from tripkit.events import ChangeEvent
from tripkit.gateway import Gateway
from tripkit.identity import Identity
from tripkit.realtime import RealtimeSyncAdapter
from tripkit.reconciler import Reconciler
from tripkit.types import BUDGETS, EXPENSES, BudgetRecord, ExpenseRecord, UserRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Totals:
    budget_amount: float
    total_expense: float
    balance: float


def _clean_amount(amount) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Amount must be a number") from exc
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return value


class ExpenseTracker:
    def __init__(
        self,
        gateway: Gateway,
        *,
        identity: Identity,
        on_change: Optional[Callable[[ChangeEvent], None]] = None,
    ):
        self._gateway = gateway
        self._planner = gateway.planner
        self._identity = identity
        self._on_change = on_change
        self.budgets: Reconciler[BudgetRecord] = Reconciler(BUDGETS)
        self.expenses: Reconciler[ExpenseRecord] = Reconciler(EXPENSES)
        self._adapters: list[RealtimeSyncAdapter] = []
        self._mounted = False

    def _require_user(self) -> UserRecord:
        user = self._identity.current_user()
        if user is None:
            raise NotAuthenticatedError("Sign in to track expenses")
        return user

    async def mount(self, *, realtime: bool = True) -> None:
        self._require_user()
        budgets, expenses = await asyncio.gather(
            asyncio.to_thread(self._planner.list_budgets),
            asyncio.to_thread(self._planner.list_expenses),
        )
        self.budgets.reset(budgets)
        self.expenses.reset(expenses)
        self._mounted = True
        if realtime:
            # Budgets and expenses are shared by every traveller.
            for reconciler in (self.budgets, self.expenses):
                adapter = RealtimeSyncAdapter(
                    self._gateway.feed, reconciler, on_change=self._on_change
                )
                await adapter.start()
                self._adapters.append(adapter)

    async def unmount(self) -> None:
        self._mounted = False
        adapters, self._adapters = self._adapters, []
        for adapter in adapters:
            await adapter.stop()

    async def add_budget(self, title: str, amount) -> BudgetRecord:
        user = self._require_user()
        clean = (title or "").strip()
        if not clean:
            raise ValidationError("Budget title is required")
        value = _clean_amount(amount)
        try:
            budget = await asyncio.to_thread(self._planner.insert_budget, user.id, clean, value)
        except Exception as exc:
            raise GatewayWriteError(f"Could not add budget: {exc}") from exc
        if self._mounted:
            self.budgets.confirm(budget, inserted=True)
        return budget

    async def add_expense(self, title: str, amount, budget_id: Optional[str] = None) -> ExpenseRecord:
        user = self._require_user()
        clean = (title or "").strip()
        if not clean:
            raise ValidationError("Expense title is required")
        value = _clean_amount(amount)
        budget_id = budget_id or None
        if budget_id is not None and budget_id not in self.budgets:
            raise NotFoundError("Budget not found")
        try:
            expense = await asyncio.to_thread(
                self._planner.insert_expense,
                user.id,
                clean,
                value,
                budget_id=budget_id,
                paid_by=user.id,
            )
        except Exception as exc:
            raise GatewayWriteError(f"Could not add expense: {exc}") from exc
        if self._mounted:
            self.expenses.confirm(expense, inserted=True)
        return expense

    def expenses_for(self, budget_id: Optional[str] = None) -> list[ExpenseRecord]:
        rows = self.expenses.rows()
        if budget_id:
            rows = [e for e in rows if e.budget_id == budget_id]
        return rows

    def totals(self, budget_id: Optional[str] = None) -> Totals:
        """Spend against one budget, or across everything when none is given."""
        budget = self.budgets.get(budget_id) if budget_id else None
        spent = sum(e.amount or 0 for e in self.expenses_for(budget_id))
        budget_amount = budget.amount if budget else 0.0
        return Totals(
            budget_amount=budget_amount,
            total_expense=spent,
            balance=budget_amount - spent if budget else 0.0,
        )

    def per_user_totals(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for expense in self.expenses.rows():
            key = expense.paid_by or "unknown"
            totals[key] = totals.get(key, 0.0) + (expense.amount or 0)
        return totals
