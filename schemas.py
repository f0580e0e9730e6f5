import datetime as dt

from pydantic import BaseModel, ConfigDict, Field


class ExpenseIn(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: dt.date
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1)


class CSVRow(BaseModel):
    """One positional CSV record: date, amount, description, category."""

    model_config = ConfigDict(frozen=True)

    line: int
    fields: tuple[str, ...] = Field(..., min_length=4)

    @property
    def date(self) -> str:
        return self.fields[0].strip()

    @property
    def amount(self) -> str:
        return self.fields[1].strip()

    @property
    def description(self) -> str:
        return self.fields[2].strip()

    @property
    def category(self) -> str:
        return self.fields[3].strip()

    @property
    def key(self) -> str:
        return "|".join(value.strip() for value in self.fields)
