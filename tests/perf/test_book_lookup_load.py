import asyncio

import httpx
import pytest

from catalog.app import app, get_database, read_access


@pytest.fixture(autouse=True)
def readers():
    app.dependency_overrides[read_access] = lambda: {"realm_access": {"roles": ["books:read"]}}
    app.dependency_overrides[get_database] = lambda: None
    yield
    app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_book_lookups_under_load():
    # ids below 1 are answered without a database, so this measures the request path alone
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        results = await asyncio.gather(*[client.get(f"/api/v1/books/{-i}") for i in range(50)])
    assert [r.status_code for r in results] == [404] * 50
    assert len({r.headers["X-Request-ID"] for r in results}) == 50
