import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import READ_PERMISSION, WRITE_PERMISSION, AuthVerifier, require_permission
from .config import get_settings
from .db import Database
from .errors import EditConflict, QueryTimeout, RecordNotFound, StorageError, ValidationFailed
from .filters import DEFAULT_SORT_SAFELIST, BookQuery, Filters, validate_query
from .models import Book, BookList, CreateBook, UpdateBook
from .otel import configure_otel
from .ratelimit import TokenBucketLimiter, rate_limit_middleware
from .repository import BookRepository
from .validator import Validator, validate_book

settings = get_settings()
logger = logging.getLogger("catalog.api")

auth_verifier = AuthVerifier(
    issuer=settings.keycloak_issuer,
    audience=settings.keycloak_audience,
    jwks_url=settings.jwks_url,
    allowed_algs={"RS256"},
    clock_skew_seconds=30,
)
read_access = require_permission(READ_PERMISSION, auth_verifier)
write_access = require_permission(WRITE_PERMISSION, auth_verifier)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = Database.from_settings(settings)
    database.ping()
    logger.info("database connection pool established", extra={"pool_size": settings.db_pool_size})
    app.state.database = database
    try:
        auth_verifier.jwks.get_keys()
    except Exception as exc:  # noqa: BLE001
        database.dispose()
        raise RuntimeError("Failed to fetch JWKS from configured url") from exc
    if settings.require_https and not settings.keycloak_issuer.startswith("https://"):
        database.dispose()
        raise RuntimeError("APP_REQUIRE_HTTPS is true but issuer is not HTTPS")
    try:
        yield
    finally:
        database.dispose()
        logger.info("database connection pool closed")


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_book_repository(database: Database = Depends(get_database)) -> BookRepository:
    return BookRepository(database)


def get_book_query(
    title: str = "",
    genres: str = "",
    sales: int = 0,
    pages: int = 0,
    page: int = 1,
    page_size: int = 20,
    sort: str = "id",
) -> BookQuery:
    query = BookQuery(
        title=title,
        genres=[genre.strip() for genre in genres.split(",") if genre.strip()],
        sales=sales,
        pages=pages,
        filters=Filters(page=page, page_size=page_size, sort=sort, sort_safelist=DEFAULT_SORT_SAFELIST),
    )
    v = Validator()
    validate_query(v, query)
    v.raise_for_errors(location="query")
    return query


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Book catalog API backed by Postgres with optimistic concurrency control.",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)
configure_otel(app, settings)

allowed_origins = os.getenv("APP_CORS_ORIGINS", "").split(",") if os.getenv("APP_CORS_ORIGINS") else []
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in allowed_origins if origin.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Expected-Version"],
    )


@app.exception_handler(ValidationFailed)
async def validation_failed_handler(request: Request, exc: ValidationFailed):
    detail = [
        {"loc": [exc.location, field], "msg": message, "type": "value_error"}
        for field, message in exc.errors
    ]
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": detail})


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Book not found"})


@app.exception_handler(EditConflict)
async def edit_conflict_handler(request: Request, exc: EditConflict):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "unable to update the record due to an edit conflict, please try again"},
    )


@app.exception_handler(QueryTimeout)
async def timeout_handler(request: Request, exc: QueryTimeout):
    logger.warning("book.timeout", extra={"path": request.url.path, "method": request.method})
    return JSONResponse(
        status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        content={"detail": "the server did not complete the request in time, please try again"},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(
        "book.storage_error",
        exc_info=exc,
        extra={"path": request.url.path, "method": request.method},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "the server encountered a problem and could not process your request"},
    )


router_v1 = APIRouter(prefix="/api/v1", tags=["v1"])


@router_v1.get("/health", tags=["health"])
def health() -> dict:
    return {"status": "ok", "environment": settings.environment, "version": settings.version}


@router_v1.get("/books", response_model=BookList, dependencies=[Depends(read_access)])
def list_books(
    query: BookQuery = Depends(get_book_query),
    repository: BookRepository = Depends(get_book_repository),
) -> BookList:
    books, metadata = repository.list(query)
    return BookList(books=books, metadata=metadata)


@router_v1.post(
    "/books",
    response_model=Book,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_access)],
)
def create_book(
    payload: CreateBook,
    response: Response,
    repository: BookRepository = Depends(get_book_repository),
) -> Book:
    book = Book(**payload.model_dump())
    v = Validator()
    validate_book(v, book)
    v.raise_for_errors()

    repository.insert(book)
    response.headers["Location"] = f"/api/v1/books/{book.id}"
    return book


@router_v1.get("/books/{book_id}", response_model=Book, dependencies=[Depends(read_access)])
def get_book(book_id: int, repository: BookRepository = Depends(get_book_repository)) -> Book:
    return repository.get(book_id)


@router_v1.patch("/books/{book_id}", response_model=Book, dependencies=[Depends(write_access)])
def update_book(
    book_id: int,
    payload: UpdateBook,
    expected_version: int | None = Header(default=None, alias="X-Expected-Version"),
    repository: BookRepository = Depends(get_book_repository),
) -> Book:
    book = repository.get(book_id)
    if expected_version is not None and expected_version != book.version:
        raise EditConflict(book_id)

    payload.apply_to(book)
    v = Validator()
    validate_book(v, book)
    v.raise_for_errors()

    return repository.update(book)


@router_v1.delete("/books/{book_id}", dependencies=[Depends(write_access)])
def delete_book(book_id: int, repository: BookRepository = Depends(get_book_repository)) -> dict:
    repository.delete(book_id)
    return {"message": "book successfully deleted"}


app.include_router(router_v1)


@app.middleware("http")
async def security_headers(request, call_next):
    if settings.require_https:
        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        scheme = forwarded_proto.lower() if forwarded_proto else request.url.scheme
        if scheme != "https":
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "HTTPS required"})

    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'; base-uri 'none'")
    if request.headers.get("authorization"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


rate_limiter = TokenBucketLimiter(rate=settings.limiter_rps, burst=settings.limiter_burst)
app.middleware("http")(rate_limit_middleware(rate_limiter, enabled=settings.limiter_enabled))


request_logger = logging.getLogger("catalog.requests")


@app.middleware("http")
async def request_logging_middleware(request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request_logger.info(
        "request.start",
        extra={"path": request.url.path, "method": request.method, "request_id": request_id},
    )
    response = await call_next(request)
    request_logger.info(
        "request.end",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "request_id": request_id,
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response
