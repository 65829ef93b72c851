import math

from pydantic import BaseModel, Field
from sqlalchemy.orm import InstrumentedAttribute

from .entities import BookRecord
from .models import Metadata
from .validator import MAX_INT32, Validator

MAX_PAGE = 10_000_000
MAX_PAGE_SIZE = 100

SORT_FIELDS = ("id", "title", "sales", "pages", "year", "runtime")
DEFAULT_SORT_SAFELIST = tuple(SORT_FIELDS) + tuple(f"-{field}" for field in SORT_FIELDS)

# Sort values are resolved through this table, never interpolated into SQL.
_SORT_COLUMNS: dict[str, InstrumentedAttribute] = {
    "id": BookRecord.id,
    "title": BookRecord.title,
    "sales": BookRecord.sales,
    "pages": BookRecord.pages,
    "year": BookRecord.year,
    "runtime": BookRecord.runtime,
}


class Filters(BaseModel):
    page: int = 1
    page_size: int = 20
    sort: str = "id"
    sort_safelist: tuple[str, ...] = DEFAULT_SORT_SAFELIST

    def sort_column(self) -> InstrumentedAttribute:
        if self.sort not in self.sort_safelist:
            raise ValueError(f"unsafe sort parameter: {self.sort}")
        column = _SORT_COLUMNS.get(self.sort.removeprefix("-"))
        if column is None:
            raise ValueError(f"unsafe sort parameter: {self.sort}")
        return column

    def sort_direction(self) -> str:
        return "desc" if self.sort.startswith("-") else "asc"

    def order_by(self):
        column = self.sort_column()
        return column.desc() if self.sort_direction() == "desc" else column.asc()

    def limit(self) -> int:
        return self.page_size

    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class BookQuery(BaseModel):
    """Everything a listing call filters on, plus paging and ordering."""

    title: str = ""
    genres: list[str] = Field(default_factory=list)
    sales: int = 0
    pages: int = 0
    filters: Filters = Field(default_factory=Filters)


def validate_page(page: int) -> str | None:
    if page < 1:
        return "must be greater than zero"
    if page > MAX_PAGE:
        return "must be a maximum of 10 million"
    return None


def validate_page_size(page_size: int) -> str | None:
    if page_size < 1:
        return "must be greater than zero"
    if page_size > MAX_PAGE_SIZE:
        return "must be a maximum of 100"
    return None


def validate_sort(sort: str, safelist) -> str | None:
    if sort not in safelist:
        return "invalid sort value"
    return None


def validate_filters(v: Validator, filters: Filters) -> None:
    for field, message in (
        ("page", validate_page(filters.page)),
        ("page_size", validate_page_size(filters.page_size)),
        ("sort", validate_sort(filters.sort, filters.sort_safelist)),
    ):
        v.check(message is None, field, message or "")


def validate_query(v: Validator, query: BookQuery) -> None:
    v.check(query.sales >= 0, "sales", "must not be negative")
    v.check(query.pages >= 0, "pages", "must not be negative")
    v.check(query.sales <= MAX_INT32, "sales", "must not be more than 2147483647")
    v.check(query.pages <= MAX_INT32, "pages", "must not be more than 2147483647")
    validate_filters(v, query.filters)


def calculate_metadata(total_records: int, page: int, page_size: int) -> Metadata:
    if total_records == 0:
        return Metadata()
    return Metadata(
        current_page=page,
        page_size=page_size,
        first_page=1,
        last_page=math.ceil(total_records / page_size),
        total_records=total_records,
    )
