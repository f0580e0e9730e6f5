from __future__ import annotations

import logging
import math
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import BinaryIO, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import ConfigurationError, get_settings
from csv_utils import (
    export_expenses,
    read_csv_rows,
    to_csv_row,
    try_parse_amount,
    try_parse_date,
)
from models import Expense, User
from repository import ExpenseRepository, UserRepository
from schemas import ExpenseIn
from security import hash_password, verify_password
from session_context import SessionContext
from validation import (
    INVALID_CREDENTIALS,
    USERNAME_ALREADY_EXISTS,
    Invalid,
    Ok,
    Result,
    local_today,
    validate_expense,
    validate_registration,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class ExpenseNotFound(LookupError):
    pass


class ExpenseAccessDenied(PermissionError):
    pass


@dataclass(frozen=True)
class CategoryFigure:
    value: int
    percentage: float


@dataclass
class ExpensePage:
    items: list[Expense]
    page: int
    page_size: int
    total: int

    @property
    def pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size))

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


def _percentage(value: float, total: int) -> float:
    if total == 0:
        return 0.0
    ratio = Decimal(str(value)) * 100 / Decimal(total)
    return float(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        categories: Optional[Iterable[str]] = None,
        scratch_dir: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.user_id = user_id
        self.categories = (
            list(categories) if categories is not None else settings.categories
        )
        self.scratch_dir = scratch_dir or settings.upload_tmp_dir
        self.expenses = ExpenseRepository(session)

    def _build(self, data: ExpenseIn) -> Expense:
        return Expense(
            id=None,
            user_id=self.user_id,
            date=data.date,
            category=data.category,
            amount_cents=data.amount_cents,
            description=data.description,
        )

    def find_by_id(self, expense_id: int) -> Optional[Expense]:
        return self.expenses.find(expense_id)

    def get_owned(self, expense_id: int) -> Expense:
        expense = self.expenses.find(expense_id)
        if expense is None:
            logger.info(f"expense_lookup: id={expense_id} not found")
            raise ExpenseNotFound(f"Expense {expense_id} not found")
        if expense.user_id != self.user_id:
            logger.info(
                f"expense_lookup: id={expense_id} user_id={self.user_id} not owner"
            )
            raise ExpenseAccessDenied(
                f"Expense {expense_id} belongs to another user"
            )
        return expense

    def list(
        self,
        year: int,
        month: int,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ExpensePage:
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        items = self.expenses.find_by_month(
            self.user_id, year, month, offset=(page - 1) * page_size, limit=page_size
        )
        total = self.count(year, month)
        return ExpensePage(items=items, page=page, page_size=page_size, total=total)

    def list_expenditure_years(self) -> list[int]:
        return self.expenses.list_expenditure_years(self.user_id)

    def count(self, year: Optional[int] = None, month: Optional[int] = None) -> int:
        return self.expenses.count_by(self.user_id, year, month)

    def create(
        self,
        expense_date: Optional[date],
        category: Optional[str],
        amount_cents: Optional[int],
        description: Optional[str],
        *,
        today: Optional[date] = None,
    ) -> Result[Expense]:
        result = validate_expense(
            expense_date, category, amount_cents, description, self.categories, today=today
        )
        if isinstance(result, Invalid):
            logger.info(
                f"expense_create_rejected: user_id={self.user_id} fields={sorted(result.errors)}"
            )
            return result
        expense = self.expenses.save(self._build(result.value))
        logger.info(f"expense_created: id={expense.id} user_id={self.user_id}")
        return Ok(expense)

    def update(
        self,
        expense_id: int,
        expense_date: Optional[date],
        category: Optional[str],
        amount_cents: Optional[int],
        description: Optional[str],
        *,
        today: Optional[date] = None,
    ) -> Result[Expense]:
        expense = self.get_owned(expense_id)
        result = validate_expense(
            expense_date, category, amount_cents, description, self.categories, today=today
        )
        if isinstance(result, Invalid):
            logger.info(
                f"expense_update_rejected: id={expense_id} fields={sorted(result.errors)}"
            )
            return result
        data = result.value
        expense.date = data.date
        expense.category = data.category
        expense.amount_cents = data.amount_cents
        expense.description = data.description
        self.expenses.update(expense)
        logger.info(f"expense_updated: id={expense_id}")
        return Ok(expense)

    def delete(self, expense_id: int) -> str:
        """Delete an owned expense and return its description."""
        description = self.get_owned(expense_id).description
        self.expenses.delete(expense_id)
        logger.info(f"expense_deleted: id={expense_id} user_id={self.user_id}")
        return description

    def _expenses_from_csv(self, path: Path) -> list[Expense]:
        configured = set(self.categories)
        visited: set[str] = set()
        today = local_today()
        expenses: list[Expense] = []
        for line, fields in read_csv_rows(path):
            row = to_csv_row(line, fields)
            if row is None:
                logger.info(f"expense_import: skip line={line} too few fields")
                continue
            if row.category not in configured:
                logger.info(
                    f"expense_import: skip line={line} unknown category {row.category!r}"
                )
                continue
            if row.key in visited:
                logger.info(f"expense_import: skip line={line} duplicate {row.key!r}")
                continue
            visited.add(row.key)
            result = validate_expense(
                try_parse_date(row.date),
                row.category,
                try_parse_amount(row.amount),
                row.description,
                self.categories,
                today=today,
            )
            if isinstance(result, Invalid):
                logger.info(
                    f"expense_import: skip line={line} invalid {result.messages()}"
                )
                continue
            expenses.append(self._build(result.value))
        return expenses

    def import_from_csv(self, upload: BinaryIO) -> int:
        """Import positional CSV rows (date, amount, description, category).

        Returns the number of rows stored. Rows with unknown categories,
        rows repeated earlier in the same file and rows that fail validation
        are skipped. The batch is stored atomically; a database failure leaves
        nothing behind and reports 0.
        """
        fd, tmp_name = tempfile.mkstemp(prefix="csv_", suffix=".csv", dir=self.scratch_dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as scratch:
                shutil.copyfileobj(upload, scratch)
            expenses = self._expenses_from_csv(tmp_path)
        finally:
            tmp_path.unlink(missing_ok=True)

        if not expenses:
            logger.info(f"expense_import: user_id={self.user_id} nothing to import")
            return 0
        try:
            self.expenses.save_imported(expenses)
        except (SQLAlchemyError, OverflowError):
            logger.exception(
                f"expense_import_failed: user_id={self.user_id} rows={len(expenses)} rolled back"
            )
            return 0
        logger.info(f"expense_import: user_id={self.user_id} imported={len(expenses)}")
        return len(expenses)

    def export_csv(self, year: int, month: int) -> str:
        return export_expenses(self.expenses.all_for_month(self.user_id, year, month))


class MonthlySummaryService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        categories: Optional[Iterable[str]] = None,
    ) -> None:
        self.user_id = user_id
        self.categories = (
            list(categories) if categories is not None else get_settings().categories
        )
        self.expenses = ExpenseRepository(session)

    def total(self, year: int, month: int) -> int:
        return self.expenses.sum_amounts(self.user_id, year, month)

    def per_category_totals(self, year: int, month: int) -> dict[str, CategoryFigure]:
        total = self.total(year, month)
        totals: dict[str, CategoryFigure] = {}
        for category in self.categories:
            value = self.expenses.sum_amounts_by_category(
                self.user_id, year, month, category
            )
            totals[category] = CategoryFigure(value, _percentage(value, total))
        return totals

    def per_category_averages(
        self, year: int, month: int
    ) -> dict[str, CategoryFigure]:
        total = self.total(year, month)
        averages: dict[str, CategoryFigure] = {}
        for category in self.categories:
            average = self.expenses.average_amounts_by_category(
                self.user_id, year, month, category
            )
            value = int(
                Decimal(str(average)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            )
            averages[category] = CategoryFigure(value, _percentage(average, total))
        return averages


class AlertGenerator:
    """Flags categories whose monthly total is over budget."""

    def __init__(
        self,
        summary: MonthlySummaryService,
        budgets: Optional[dict[str, int]] = None,
    ) -> None:
        self.summary = summary
        self.budgets = budgets if budgets is not None else get_settings().category_budgets
        missing = [c for c in summary.categories if c not in self.budgets]
        if missing:
            raise ConfigurationError(
                f"No budget configured for categories: {', '.join(missing)}"
            )

    def generate(self, year: int, month: int) -> dict[str, int]:
        alerts: dict[str, int] = {}
        for category, figure in self.summary.per_category_totals(year, month).items():
            budget = self.budgets[category]
            if figure.value > budget:
                alerts[category] = figure.value - budget
        return alerts


class AuthService:
    def __init__(self, session: Session, rounds: Optional[int] = None) -> None:
        self.users = UserRepository(session)
        self.rounds = rounds

    def register(
        self,
        username: str,
        password: str,
        password_confirm: Optional[str] = None,
    ) -> Result[User]:
        username = username.strip()
        taken = self.users.find_by_username(username) is not None
        if taken:
            logger.warning(f"register_rejected: username={username!r} already exists")
        result = validate_registration(
            username, password, password_confirm, username_taken=taken
        )
        if isinstance(result, Invalid):
            logger.info(f"register_rejected: fields={sorted(result.errors)}")
            return result

        user = User(
            id=None,
            username=username,
            password_hash=hash_password(password, self.rounds),
            created_at=datetime.utcnow(),
        )
        try:
            self.users.save(user)
        except IntegrityError:
            logger.warning(f"register_rejected: username={username!r} taken concurrently")
            return Invalid({"username": [USERNAME_ALREADY_EXISTS]})
        logger.info(f"register: user_id={user.id} username={username!r} created")
        return Ok(user)

    def attempt(
        self, username: str, password: str, session: SessionContext
    ) -> Result[User]:
        user = self.users.find_by_username(username.strip())
        if user is None or not verify_password(password, user.password_hash):
            logger.warning(f"login_failed: username={username!r}")
            return Invalid({"credentials": [INVALID_CREDENTIALS]})

        session.regenerate()
        session.user_id = user.id
        logger.info(f"login: user_id={user.id} authenticated")
        return Ok(user)

    def logout(self, session: SessionContext) -> None:
        user_id = session.user_id
        session.clear()
        logger.info(f"logout: user_id={user_id}")
