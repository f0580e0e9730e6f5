from __future__ import annotations

from datetime import date
from typing import Optional, Sequence

from sqlalchemy import extract, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Expense, User


def _month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


class ExpenseRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _month_filter(self, user_id: int, year: int, month: int):
        return (
            Expense.user_id == user_id,
            Expense.date.between(_month_start(year, month), _month_end(year, month)),
        )

    def find(self, expense_id: int) -> Optional[Expense]:
        return self.session.get(Expense, expense_id)

    def save(self, expense: Expense) -> Expense:
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def save_imported(self, expenses: Sequence[Expense]) -> None:
        """Insert ``expenses`` in one transaction; nothing is kept if any insert fails."""
        try:
            for expense in expenses:
                self.session.add(expense)
                self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def update(self, expense: Expense) -> Expense:
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.session.get(Expense, expense_id)
        if expense is None:
            return
        self.session.delete(expense)
        self.session.commit()

    def find_by_month(
        self, user_id: int, year: int, month: int, offset: int = 0, limit: int = 20
    ) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(*self._month_filter(user_id, year, month))
            .order_by(Expense.date.desc(), Expense.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def all_for_month(self, user_id: int, year: int, month: int) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(*self._month_filter(user_id, year, month))
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def count_by(
        self, user_id: int, year: Optional[int] = None, month: Optional[int] = None
    ) -> int:
        stmt = select(func.count(Expense.id)).where(Expense.user_id == user_id)
        if year is not None:
            stmt = stmt.where(extract("year", Expense.date) == year)
        if month is not None:
            stmt = stmt.where(extract("month", Expense.date) == month)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list_expenditure_years(self, user_id: int) -> list[int]:
        year = extract("year", Expense.date).label("year")
        stmt = (
            select(year)
            .where(Expense.user_id == user_id)
            .distinct()
            .order_by(year.desc())
        )
        return [int(y) for y in self.session.scalars(stmt).all()]

    def sum_amounts(self, user_id: int, year: int, month: int) -> int:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            *self._month_filter(user_id, year, month)
        )
        return int(self.session.execute(stmt).scalar_one())

    def sum_amounts_by_category(
        self, user_id: int, year: int, month: int, category: str
    ) -> int:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            *self._month_filter(user_id, year, month), Expense.category == category
        )
        return int(self.session.execute(stmt).scalar_one())

    def average_amounts_by_category(
        self, user_id: int, year: int, month: int, category: str
    ) -> float:
        stmt = select(func.avg(Expense.amount_cents)).where(
            *self._month_filter(user_id, year, month), Expense.category == category
        )
        return float(self.session.execute(stmt).scalar_one() or 0)


class UserRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_username(self, username: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.username == username))

    def save(self, user: User) -> User:
        try:
            self.session.add(user)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self.session.refresh(user)
        return user
