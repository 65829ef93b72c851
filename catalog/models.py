from datetime import datetime

from pydantic import BaseModel, Field


class Book(BaseModel):
    id: int | None = None
    created_at: datetime | None = None
    title: str = ""
    sales: int = 0
    pages: int = 0
    year: int = 0
    runtime: int = 0
    genres: list[str] | None = None
    version: int | None = None


class CreateBook(BaseModel):
    title: str = ""
    sales: int = 0
    pages: int = 0
    year: int = 0
    runtime: int = 0
    genres: list[str] | None = None


class UpdateBook(BaseModel):
    title: str | None = None
    sales: int | None = None
    pages: int | None = None
    year: int | None = None
    runtime: int | None = None
    genres: list[str] | None = None

    def apply_to(self, book: Book) -> Book:
        """Copy only the fields the client sent onto ``book``."""
        for field, value in self.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(book, field, value)
        return book


class Metadata(BaseModel):
    current_page: int = 0
    page_size: int = 0
    first_page: int = 0
    last_page: int = 0
    total_records: int = 0


class BookList(BaseModel):
    books: list[Book] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=Metadata)
