from datetime import date, timedelta

import pytest

from csv_utils import try_parse_amount
from validation import (
    CATEGORY_PLACEHOLDER,
    ERROR_AMOUNT,
    ERROR_AMOUNT_TOO_LARGE,
    ERROR_CATEGORY,
    ERROR_DATE,
    ERROR_DESCRIPTION,
    EXPENSE_FIELDS,
    MAX_AMOUNT_CENTS,
    PASSWORD_NO_MATCH,
    PASSWORD_NO_NUMBER,
    PASSWORD_TOO_SHORT,
    USERNAME_ALREADY_EXISTS,
    USERNAME_TOO_SHORT,
    Invalid,
    Ok,
    validate_expense,
    validate_registration,
)

CATEGORIES = ["Food", "Transport"]
TODAY = date(2025, 6, 15)


@pytest.mark.parametrize("days_ahead", [1, 2, 30, 365])
def test_future_dates_report_date_error(days_ahead: int) -> None:
    result = validate_expense(
        TODAY + timedelta(days=days_ahead), "Food", 1000, "Lunch", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Invalid)
    assert result.get("date") == ERROR_DATE


@pytest.mark.parametrize("amount_cents", [0, -1, -2500])
def test_non_positive_amounts_report_amount_error(amount_cents: int) -> None:
    result = validate_expense(
        TODAY, "Food", amount_cents, "Lunch", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Invalid)
    assert result.slots(EXPENSE_FIELDS) == [None, None, ERROR_AMOUNT, None]


@pytest.mark.parametrize("amount_cents", [1, 99, 125_000])
def test_positive_amounts_with_valid_fields_succeed(amount_cents: int) -> None:
    result = validate_expense(
        TODAY, "Transport", amount_cents, "  Bus ticket ", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Ok)
    assert result.value.amount_cents == amount_cents
    assert result.value.description == "Bus ticket"


def test_today_is_not_in_the_future() -> None:
    result = validate_expense(TODAY, "Food", 100, "Snack", CATEGORIES, today=TODAY)
    assert isinstance(result, Ok)


def test_all_failures_are_reported_together() -> None:
    result = validate_expense(
        TODAY + timedelta(days=1), "Food", 0, "Lunch", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Invalid)
    assert result.slots(EXPENSE_FIELDS) == [ERROR_DATE, None, ERROR_AMOUNT, None]


def test_every_field_can_fail_at_once() -> None:
    result = validate_expense(
        TODAY + timedelta(days=3), CATEGORY_PLACEHOLDER, -5, "   ", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Invalid)
    assert result.slots(EXPENSE_FIELDS) == [
        ERROR_DATE,
        ERROR_CATEGORY,
        ERROR_AMOUNT,
        ERROR_DESCRIPTION,
    ]


def test_unknown_category_is_rejected() -> None:
    result = validate_expense(TODAY, "Gambling", 100, "Casino", CATEGORIES, today=TODAY)
    assert isinstance(result, Invalid)
    assert result.get("category") == ERROR_CATEGORY


def test_missing_values_are_reported_on_their_slot() -> None:
    result = validate_expense(None, None, None, None, CATEGORIES, today=TODAY)
    assert isinstance(result, Invalid)
    assert all(slot is not None for slot in result.slots(EXPENSE_FIELDS))


def test_registration_accumulates_every_problem() -> None:
    result = validate_registration("bob", "short", "other", username_taken=True)
    assert isinstance(result, Invalid)
    assert result.errors["username"] == [USERNAME_ALREADY_EXISTS, USERNAME_TOO_SHORT]
    assert result.errors["password"] == [PASSWORD_TOO_SHORT, PASSWORD_NO_NUMBER]
    assert result.errors["password_confirm"] == [PASSWORD_NO_MATCH]


def test_registration_without_confirmation_skips_that_check() -> None:
    result = validate_registration("alice", "s3cretpass")
    assert isinstance(result, Ok)


@pytest.mark.parametrize("text", ["1e30", "9" * 40, "-1e30"])
def test_amounts_beyond_decimal_precision_are_unparseable(text: str) -> None:
    assert try_parse_amount(text) is None


def test_amount_ceiling() -> None:
    result = validate_expense(
        TODAY, "Food", MAX_AMOUNT_CENTS + 1, "Yacht", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Invalid)
    assert result.errors == {"amount": [ERROR_AMOUNT_TOO_LARGE]}

    result = validate_expense(
        TODAY, "Food", MAX_AMOUNT_CENTS, "House", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Ok)


def test_unparseable_huge_amount_reports_amount_error() -> None:
    result = validate_expense(
        TODAY, "Food", try_parse_amount("1e30"), "Yacht", CATEGORIES, today=TODAY
    )
    assert isinstance(result, Invalid)
    assert result.get("amount") == ERROR_AMOUNT
