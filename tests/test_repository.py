from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import text

from catalog.config import get_settings
from catalog.db import Database
from catalog.errors import EditConflict, QueryTimeout, RecordNotFound, StorageError
from catalog.filters import BookQuery, Filters
from catalog.models import Metadata

pytestmark = pytest.mark.database


def test_insert_then_get_round_trips(repository, make_book):
    book = repository.insert(make_book())

    assert book.id == 1
    assert book.version == 1
    assert book.created_at is not None

    fetched = repository.get(book.id)
    assert fetched == book
    assert fetched.genres == ["scifi"]


def test_get_missing_row(repository):
    with pytest.raises(RecordNotFound):
        repository.get(42)


def test_update_increments_version(repository, make_book):
    book = repository.insert(make_book())
    book.title = "Dune Messiah"
    book.genres = ["scifi", "classic"]

    updated = repository.update(book)

    assert updated.version == 2
    stored = repository.get(book.id)
    assert stored.title == "Dune Messiah"
    assert stored.genres == ["scifi", "classic"]
    assert stored.version == 2


def test_update_with_stale_version_conflicts(repository, make_book):
    book = repository.insert(make_book())
    stale = book.model_copy()
    repository.update(book)

    with pytest.raises(EditConflict):
        repository.update(stale)
    assert repository.get(book.id).version == 2


def test_update_of_deleted_row_conflicts(repository, make_book):
    book = repository.insert(make_book())
    repository.delete(book.id)
    with pytest.raises(EditConflict):
        repository.update(book)


def test_concurrent_updates_only_one_wins(repository, make_book):
    book = repository.insert(make_book())
    attempts = [book.model_copy(update={"sales": i}) for i in range(8)]

    def attempt(candidate):
        try:
            repository.update(candidate)
            return "ok"
        except EditConflict:
            return "conflict"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, attempts))

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7
    assert repository.get(book.id).version == 2


def test_delete_twice_is_not_found(repository, make_book):
    book = repository.insert(make_book())
    repository.delete(book.id)

    with pytest.raises(RecordNotFound):
        repository.delete(book.id)
    with pytest.raises(RecordNotFound):
        repository.get(book.id)


def test_delete_never_inserted(repository):
    with pytest.raises(RecordNotFound):
        repository.delete(1)


def test_list_without_filters_pages_in_sort_order(repository, make_book):
    for title, year in [("C", 1990), ("A", 1990), ("B", 1970), ("D", 2001), ("E", 1990)]:
        repository.insert(make_book(title=title, year=year))

    query = BookQuery(filters=Filters(page=1, page_size=3, sort="year"))
    books, metadata = repository.list(query)

    # ties on year break on id ascending
    assert [book.title for book in books] == ["B", "C", "A"]
    assert metadata == Metadata(current_page=1, page_size=3, first_page=1, last_page=2, total_records=5)

    books, metadata = repository.list(BookQuery(filters=Filters(page=2, page_size=3, sort="year")))
    assert [book.title for book in books] == ["E", "D"]
    assert metadata.current_page == 2


def test_list_descending(repository, make_book):
    for pages in (10, 30, 20):
        repository.insert(make_book(pages=pages))
    books, _ = repository.list(BookQuery(filters=Filters(sort="-pages")))
    assert [book.pages for book in books] == [30, 20, 10]


def test_list_total_ignores_pagination(repository, make_book):
    for i in range(3):
        repository.insert(make_book(title=f"Book {i}"))
    books, metadata = repository.list(BookQuery(filters=Filters(page=5, page_size=2)))
    assert books == []
    assert metadata.total_records == 3
    assert metadata.last_page == 2


def test_list_text_and_genre_filters(repository, make_book):
    repository.insert(make_book(title="Dune", genres=["scifi", "classic"]))
    repository.insert(make_book(title="Children of Dune", genres=["scifi"]))
    repository.insert(make_book(title="Emma", genres=["romance", "classic"]))

    books, _ = repository.list(BookQuery(title="dune"))
    assert [book.title for book in books] == ["Dune", "Children of Dune"]

    books, _ = repository.list(BookQuery(genres=["classic"]))
    assert [book.title for book in books] == ["Dune", "Emma"]

    books, metadata = repository.list(BookQuery(title="dune", genres=["classic", "scifi"]))
    assert [book.title for book in books] == ["Dune"]
    assert metadata.total_records == 1


def test_list_numeric_lower_bounds(repository, make_book):
    repository.insert(make_book(title="Small", sales=5, pages=50))
    repository.insert(make_book(title="Big", sales=500, pages=900))
    books, _ = repository.list(BookQuery(sales=100))
    assert [book.title for book in books] == ["Big"]
    books, _ = repository.list(BookQuery(pages=60))
    assert [book.title for book in books] == ["Big"]


def test_list_empty_store(repository):
    books, metadata = repository.list(BookQuery())
    assert books == []
    assert metadata == Metadata()


def test_slow_statement_times_out(database):
    fast = Database(get_settings().database_url, pool_size=1, query_timeout_seconds=0.2)
    try:
        with pytest.raises(QueryTimeout):
            with fast.session() as session:
                session.execute(text("SELECT pg_sleep(2)"))
        # the connection went back to the pool and is usable again
        fast.ping()
    finally:
        fast.dispose()


def test_deadline_covers_the_whole_session(database):
    bounded = Database(get_settings().database_url, pool_size=1, query_timeout_seconds=1.0)
    try:
        with pytest.raises(QueryTimeout):
            with bounded.session() as session:
                # each sleep fits the budget alone, together they do not
                session.execute(text("SELECT pg_sleep(0.6)"))
                session.execute(text("SELECT pg_sleep(0.6)"))
        bounded.ping()
    finally:
        bounded.dispose()


def test_constraint_violation_is_storage_error(database):
    with pytest.raises(StorageError):
        with database.session() as session:
            session.execute(text("INSERT INTO books (title) VALUES ('no other columns')"))
