import logging

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Row

from .db import Database
from .entities import BookRecord
from .errors import EditConflict, RecordNotFound
from .filters import BookQuery, calculate_metadata
from .models import Book, Metadata
from .validator import ensure_valid

logger = logging.getLogger(__name__)

_COLUMNS = (
    BookRecord.id,
    BookRecord.created_at,
    BookRecord.title,
    BookRecord.sales,
    BookRecord.pages,
    BookRecord.year,
    BookRecord.runtime,
    BookRecord.genres,
    BookRecord.version,
)


class BookRepository:
    """CRUD and listing for books against a shared :class:`Database` pool.

    ``insert`` and ``update`` refuse books that fail validation with
    :class:`ValidationFailed` before touching the pool. Nothing here retries.
    """

    def __init__(self, database: Database):
        self.database = database

    def insert(self, book: Book) -> Book:
        ensure_valid(book)
        stmt = (
            insert(BookRecord)
            .values(**self._writable_fields(book))
            .returning(BookRecord.id, BookRecord.created_at, BookRecord.version)
        )
        with self.database.session() as session:
            row = session.execute(stmt).one()
        book.id, book.created_at, book.version = row.id, row.created_at, row.version
        return book

    def get(self, book_id: int) -> Book:
        # Identity values start at 1, so lower ids can never match a row.
        if book_id < 1:
            raise RecordNotFound(book_id)
        stmt = select(*_COLUMNS).where(BookRecord.id == book_id)
        with self.database.session() as session:
            row = session.execute(stmt).one_or_none()
        if row is None:
            raise RecordNotFound(book_id)
        return self._to_schema(row)

    def update(self, book: Book) -> Book:
        """Replace the stored row only if its version still matches ``book.version``.

        The check and the write happen in one statement, so of several callers
        holding the same version exactly one wins and the rest get
        :class:`EditConflict`.
        """
        ensure_valid(book)
        stmt = (
            update(BookRecord)
            .where(BookRecord.id == book.id, BookRecord.version == book.version)
            .values(**self._writable_fields(book), version=BookRecord.version + 1)
            .returning(BookRecord.version)
            .execution_options(synchronize_session=False)
        )
        with self.database.session() as session:
            new_version = session.execute(stmt).scalar_one_or_none()
        if new_version is None:
            logger.warning("book.edit_conflict", extra={"book_id": book.id, "version": book.version})
            raise EditConflict(book.id)
        book.version = new_version
        return book

    def delete(self, book_id: int) -> None:
        if book_id < 1:
            raise RecordNotFound(book_id)
        stmt = (
            delete(BookRecord)
            .where(BookRecord.id == book_id)
            .execution_options(synchronize_session=False)
        )
        with self.database.session() as session:
            deleted = session.execute(stmt).rowcount
        if deleted == 0:
            raise RecordNotFound(book_id)

    def list(self, query: BookQuery) -> tuple[list[Book], Metadata]:
        filters = query.filters
        conditions = self._conditions(query)
        page_stmt = (
            select(*_COLUMNS)
            .where(*conditions)
            .order_by(filters.order_by(), BookRecord.id.asc())
            .limit(filters.limit())
            .offset(filters.offset())
        )
        count_stmt = select(func.count()).select_from(BookRecord).where(*conditions)

        with self.database.session() as session:
            rows = session.execute(page_stmt).all()
            total_records = session.execute(count_stmt).scalar_one()

        books = [self._to_schema(row) for row in rows]
        return books, calculate_metadata(total_records, filters.page, filters.page_size)

    @staticmethod
    def _conditions(query: BookQuery):
        conditions = []
        if query.title:
            conditions.append(
                func.to_tsvector("simple", BookRecord.title).bool_op("@@")(
                    func.plainto_tsquery("simple", query.title)
                )
            )
        if query.genres:
            conditions.append(BookRecord.genres.contains(query.genres))
        if query.sales:
            conditions.append(BookRecord.sales >= query.sales)
        if query.pages:
            conditions.append(BookRecord.pages >= query.pages)
        return conditions

    @staticmethod
    def _writable_fields(book: Book) -> dict:
        return book.model_dump(include={"title", "sales", "pages", "year", "runtime", "genres"})

    @staticmethod
    def _to_schema(row: Row) -> Book:
        return Book.model_validate(row, from_attributes=True)
