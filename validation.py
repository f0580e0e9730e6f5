"""Field validation with a tagged result.

Every check runs; a caller gets either ``Ok`` with the cleaned value or
``Invalid`` with every failing field and its reasons.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Generic, Iterable, Optional, TypeVar, Union
from zoneinfo import ZoneInfo

from config import get_settings
from schemas import ExpenseIn

T = TypeVar("T")

CATEGORY_PLACEHOLDER = "Select a category"
EXPENSE_FIELDS = ("date", "category", "amount", "description")

ERROR_DATE = "Date cannot be in the future"
ERROR_DATE_MISSING = "Enter a valid date"
ERROR_CATEGORY = "Select one of the available categories"
ERROR_AMOUNT = "Amount must be greater than zero"
ERROR_AMOUNT_TOO_LARGE = "Amount is too large"
ERROR_DESCRIPTION = "Description is required"

USERNAME_ALREADY_EXISTS = "Username already exists"
USERNAME_TOO_SHORT = "Username must be at least 4 characters long"
PASSWORD_TOO_SHORT = "Password must be at least 8 characters long"
PASSWORD_NO_NUMBER = "Password must contain at least 1 number"
PASSWORD_NO_MATCH = "Passwords don't match"
INVALID_CREDENTIALS = "Invalid username or password"

MIN_USERNAME_LENGTH = 4
MIN_PASSWORD_LENGTH = 8
# one billion in currency units, well inside a 64-bit INTEGER column
MAX_AMOUNT_CENTS = 100_000_000_000


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Invalid:
    errors: dict[str, list[str]] = field(default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        reasons = self.errors.get(name)
        return reasons[0] if reasons else None

    def slots(self, names: Iterable[str]) -> list[Optional[str]]:
        return [self.get(name) for name in names]

    def messages(self) -> dict[str, str]:
        return {name: "; ".join(reasons) for name, reasons in self.errors.items()}


Result = Union[Ok[T], Invalid]


class _Collector:
    def __init__(self) -> None:
        self.errors: dict[str, list[str]] = {}

    def add(self, name: str, reason: str) -> None:
        self.errors.setdefault(name, []).append(reason)

    def __bool__(self) -> bool:
        return bool(self.errors)


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def validate_expense(
    expense_date: Optional[date],
    category: Optional[str],
    amount_cents: Optional[int],
    description: Optional[str],
    categories: Iterable[str],
    *,
    today: Optional[date] = None,
) -> Result[ExpenseIn]:
    today = today or local_today()
    errors = _Collector()

    if expense_date is None:
        errors.add("date", ERROR_DATE_MISSING)
    elif expense_date > today:
        errors.add("date", ERROR_DATE)

    category = (category or "").strip()
    if not category or category == CATEGORY_PLACEHOLDER or category not in set(categories):
        errors.add("category", ERROR_CATEGORY)

    if amount_cents is None or amount_cents <= 0:
        errors.add("amount", ERROR_AMOUNT)
    elif amount_cents > MAX_AMOUNT_CENTS:
        errors.add("amount", ERROR_AMOUNT_TOO_LARGE)

    description = (description or "").strip()
    if not description:
        errors.add("description", ERROR_DESCRIPTION)

    if errors:
        return Invalid(errors.errors)
    return Ok(
        ExpenseIn(
            date=expense_date,
            category=category,
            amount_cents=amount_cents,
            description=description,
        )
    )


def validate_registration(
    username: str,
    password: str,
    password_confirm: Optional[str] = None,
    *,
    username_taken: bool = False,
) -> Result[str]:
    errors = _Collector()
    if username_taken:
        errors.add("username", USERNAME_ALREADY_EXISTS)
    if len(username) < MIN_USERNAME_LENGTH:
        errors.add("username", USERNAME_TOO_SHORT)
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.add("password", PASSWORD_TOO_SHORT)
    if not re.search(r"\d", password):
        errors.add("password", PASSWORD_NO_NUMBER)
    if password_confirm is not None and password != password_confirm:
        errors.add("password_confirm", PASSWORD_NO_MATCH)
    if errors:
        return Invalid(errors.errors)
    return Ok(username)
