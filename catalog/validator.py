from collections.abc import Hashable, Iterable
from datetime import date

from .errors import ValidationFailed
from .models import Book

MIN_YEAR = 1888
MAX_TITLE_BYTES = 500
MAX_GENRES = 5
MAX_PAGES = 10000
# sales, pages and runtime are stored in 4-byte integer columns
MAX_INT32 = 2_147_483_647


class Validator:
    """Collects field errors, keeping the first message reported for each field."""

    def __init__(self) -> None:
        self._errors: dict[str, str] = {}

    @property
    def valid(self) -> bool:
        return not self._errors

    @property
    def errors(self) -> list[tuple[str, str]]:
        return list(self._errors.items())

    def add_error(self, field: str, message: str) -> None:
        self._errors.setdefault(field, message)

    def check(self, ok: bool, field: str, message: str) -> None:
        if not ok:
            self.add_error(field, message)

    def raise_for_errors(self, location: str = "body") -> None:
        if self._errors:
            raise ValidationFailed(self.errors, location)


def unique(values: Iterable[Hashable]) -> bool:
    seen = set()
    for value in values:
        if value in seen:
            return False
        seen.add(value)
    return True


def validate_book(v: Validator, book: Book) -> None:
    v.check(book.title != "", "title", "must be provided")
    v.check(len(book.title.encode("utf-8")) <= MAX_TITLE_BYTES, "title", "must not be more than 500 bytes long")

    v.check(book.year != 0, "year", "must be provided")
    v.check(book.year >= MIN_YEAR, "year", "must be greater than 1888")
    v.check(book.year <= date.today().year, "year", "must not be in the future")

    v.check(book.runtime != 0, "runtime", "must be provided")
    v.check(book.runtime > 0, "runtime", "must be a positive integer")
    v.check(book.runtime <= MAX_INT32, "runtime", "must not be more than 2147483647")

    genres = book.genres
    v.check(genres is not None, "genres", "must be provided")
    if genres is not None:
        v.check(len(genres) >= 1, "genres", "must contain at least 1 genre")
        v.check(len(genres) <= MAX_GENRES, "genres", "must not contain more than 5 genres")
        v.check(unique(genres), "genres", "must not contain duplicate values")

    v.check(book.sales >= 0, "sales", "must not be negative")
    v.check(book.sales <= MAX_INT32, "sales", "must not be more than 2147483647")
    v.check(book.pages >= 0, "pages", "must not be negative")
    v.check(book.pages <= MAX_PAGES, "pages", "must not be more than 10000")


def validate(book: Book) -> list[tuple[str, str]]:
    v = Validator()
    validate_book(v, book)
    return v.errors


def ensure_valid(book: Book) -> None:
    v = Validator()
    validate_book(v, book)
    v.raise_for_errors()
