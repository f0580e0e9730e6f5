import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from pathlib import Path
from typing import Iterator, Optional, Sequence

from models import Expense
from schemas import CSVRow


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return datetime.fromisoformat(value).date()


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    try:
        cents = int((amount * 100).quantize(Decimal("1")))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def try_parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return parse_date(value)
    except ValueError:
        return None


def try_parse_amount(value: Optional[str]) -> Optional[int]:
    """Signed cents, or None when the text is not a number."""
    if not value:
        return None
    try:
        return parse_amount(value, allow_negative=True)
    except ValueError:
        return None


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def read_csv_rows(path: Path) -> Iterator[tuple[int, list[str]]]:
    """Stream ``(line, fields)`` pairs from ``path``, dropping blank lines."""
    with open(path, newline="", encoding="utf-8-sig") as handle:
        for line, fields in enumerate(csv.reader(handle), start=1):
            if any(f.strip() for f in fields):
                yield line, fields


def to_csv_row(line: int, fields: list[str]) -> Optional[CSVRow]:
    if len(fields) < 4:
        return None
    return CSVRow(line=line, fields=tuple(fields))


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    for expense in expenses:
        writer.writerow(
            [
                expense.date.isoformat(),
                format_amount(expense.amount_cents),
                sanitize_csv_value(expense.description),
                sanitize_csv_value(expense.category),
            ]
        )
    return output.getvalue()
