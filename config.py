import os
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Optional

DEFAULT_CATEGORY_BUDGETS = (
    "Groceries=400,Restaurants=150,Transport=120,Utilities=250,"
    "Entertainment=100,Health=80,Other=100"
)


class ConfigurationError(ValueError):
    pass


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        category_budgets: dict[str, int],
        upload_tmp_dir: Optional[str],
        bcrypt_rounds: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.category_budgets = category_budgets
        self.upload_tmp_dir = upload_tmp_dir
        self.bcrypt_rounds = bcrypt_rounds
        self.log_level = log_level

    @property
    def categories(self) -> list[str]:
        return list(self.category_budgets)


def _budget_cents(category: str, raw: str) -> int:
    try:
        amount = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ConfigurationError(
            f"Budget for category '{category}' is not a number: {raw!r}"
        ) from exc
    if not amount.is_finite():
        raise ConfigurationError(f"Budget for category '{category}' is not finite")
    if amount < 0:
        raise ConfigurationError(f"Budget for category '{category}' is negative")
    return int((amount * 100).quantize(Decimal("1")))


def _validated(pairs: list[tuple[str, str]]) -> dict[str, int]:
    budgets: dict[str, int] = {}
    for name, raw in pairs:
        name = name.strip()
        if not name:
            raise ConfigurationError("Category names must not be empty")
        if name in budgets:
            raise ConfigurationError(f"Category '{name}' is configured twice")
        budgets[name] = _budget_cents(name, raw)
    if not budgets:
        raise ConfigurationError("At least one category must be configured")
    return budgets


def parse_category_budgets(value: str) -> dict[str, int]:
    """Parse ``"Food=300,Transport=120.50"`` into an ordered name -> cents mapping."""
    pairs: list[tuple[str, str]] = []
    for item in value.split(","):
        if not item.strip():
            continue
        name, sep, raw = item.partition("=")
        if not sep:
            raise ConfigurationError(f"Category '{name.strip()}' has no budget")
        pairs.append((name, raw))
    return _validated(pairs)


def parse_parallel_budgets(categories: str, budgets: str) -> dict[str, int]:
    names = [c for c in categories.split(",")]
    amounts = [b for b in budgets.split(",")]
    if len(names) != len(amounts):
        raise ConfigurationError(
            f"{len(names)} categories configured but {len(amounts)} budgets"
        )
    return _validated(list(zip(names, amounts)))


def _category_budgets_from_env() -> dict[str, int]:
    legacy_categories = os.getenv("EXPENSES_CATEGORIES")
    legacy_budgets = os.getenv("EXPENSES_BUDGETS")
    combined = os.getenv("EXPENSES_CATEGORY_BUDGETS")
    if combined is None and (legacy_categories or legacy_budgets):
        return parse_parallel_budgets(legacy_categories or "", legacy_budgets or "")
    return parse_category_budgets(combined or DEFAULT_CATEGORY_BUDGETS)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Europe/Berlin")
    session_secret = os.getenv(
        "EXPENSES_SESSION_SECRET",
        "4f1c0de2a7b94e1d8c3b6a5f9e2d7c1b0a8f6e4d2c9b7a5e3f1d0c8b6a4e2f0d",
    )
    category_budgets = _category_budgets_from_env()
    upload_tmp_dir = os.getenv("EXPENSES_UPLOAD_TMP_DIR") or None
    bcrypt_rounds = int(os.getenv("EXPENSES_BCRYPT_ROUNDS", "12"))
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        category_budgets=category_budgets,
        upload_tmp_dir=upload_tmp_dir,
        bcrypt_rounds=bcrypt_rounds,
        log_level=log_level,
    )
