import httpx
import pytest
from fastapi.responses import StreamingResponse

from conftest import make_tarball, make_upload
from alexandrie.api.crates import download_crate
from alexandrie.core.dependencies import get_registry
from alexandrie.main import app

ALICE = {"Authorization": "alice-token"}
BOB = {"Authorization": "Bearer bob-token"}


@pytest.fixture
async def client(registry, alice, bob):
    app.dependency_overrides[get_registry] = lambda: registry
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def publish(client, name="demo", vers="0.1.0", headers=ALICE, **extra):
    return await client.put("/api/v1/crates/new", content=make_upload(name, vers, **extra), headers=headers)


class TestPublishEndpoint:
    async def test_publish(self, client):
        response = await publish(client)
        assert response.status_code == 200
        assert response.json() == {"warnings": {"invalid_categories": [], "invalid_badges": [], "other": []}}

    async def test_requires_token(self, client):
        response = await client.put("/api/v1/crates/new", content=make_upload("demo", "0.1.0"))
        assert response.status_code == 401
        assert response.json()["errors"][0]["detail"] == "missing API token"

    async def test_unknown_token(self, client):
        response = await publish(client, headers={"Authorization": "wrong"})
        assert response.status_code == 401

    async def test_duplicate_is_conflict(self, client):
        await publish(client)
        response = await publish(client)
        assert response.status_code == 409
        assert "already has a version" in response.json()["errors"][0]["detail"]

    async def test_invalid_metadata(self, client):
        response = await publish(client, vers="one")
        assert response.status_code == 400
        assert "`vers`" in response.json()["errors"][0]["detail"]

    async def test_badges(self, client):
        badges = {"maintenance": {"status": "actively-developed"}, "travis-ci": "not-a-table"}
        response = await publish(client, badges=badges)
        assert response.json()["warnings"]["invalid_badges"] == ["travis-ci"]

        info = (await client.get("/api/v1/crates/demo")).json()
        assert info["badges"] == {"maintenance": {"status": "actively-developed"}}

    async def test_oversized(self, client, settings):
        tarball = b"x" * (settings.max_crate_size + 1)
        response = await publish(client, tarball=tarball)
        assert response.status_code == 413


class TestReadEndpoints:
    async def test_download(self, client, registry):
        await publish(client)
        response = await client.get("/api/v1/crates/demo/0.1.0/download")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/gzip"
        assert response.headers["content-length"] == str(len(make_tarball("demo", "0.1.0")))
        assert response.content == make_tarball("demo", "0.1.0")
        await registry.queries.flush()

    async def test_download_missing(self, client):
        response = await client.get("/api/v1/crates/demo/0.1.0/download")
        assert response.status_code == 404
        assert "errors" in response.json()

    async def test_crate_info(self, client):
        await publish(client, keywords=["cli"])
        body = (await client.get("/api/v1/crates/demo")).json()
        assert body["name"] == "demo"
        assert body["max_version"] == "0.1.0"
        assert body["keywords"] == ["cli"]

    async def test_search_and_suggest(self, client):
        await publish(client, description="Demonstration crate")
        search = (await client.get("/api/v1/crates", params={"q": "demo", "per_page": 5})).json()
        assert search["meta"]["total"] == 1
        assert search["crates"][0]["max_version"] == "0.1.0"

        suggest = (await client.get("/api/v1/crates/suggest", params={"q": "de"})).json()
        assert suggest == {"suggestions": [{"name": "demo", "vers": "0.1.0"}]}

    async def test_categories(self, client):
        assert (await client.get("/api/v1/categories")).json() == {"categories": [], "meta": {"total": 0}}

        await publish(client, categories=["Parsing", "Command-line utilities"])
        body = (await client.get("/api/v1/categories")).json()
        assert body == {
            "categories": [
                {"name": "command-line utilities", "tag": "command-line utilities", "description": ""},
                {"name": "parsing", "tag": "parsing", "description": ""},
            ],
            "meta": {"total": 2},
        }

    async def test_download_is_streamed(self, client, registry):
        await publish(client)
        response = await download_crate("demo", "0.1.0", registry=registry)
        assert isinstance(response, StreamingResponse)
        assert response.headers["content-length"] == str(len(make_tarball("demo", "0.1.0")))
        assert b"".join([chunk async for chunk in response.body_iterator]) == make_tarball("demo", "0.1.0")
        await registry.queries.flush()

    async def test_readme(self, client):
        tarball = make_tarball("demo", "0.1.0", {"README.md": "# Hello"})
        await publish(client, tarball=tarball)
        response = await client.get("/api/v1/crates/demo/0.1.0/readme")
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "Hello" in response.text


class TestYankEndpoints:
    async def test_yank_and_unyank(self, client, registry):
        await publish(client)
        response = await client.delete("/api/v1/crates/demo/0.1.0/yank", headers=ALICE)
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert registry.index.latest_record("demo").yanked is True

        response = await client.put("/api/v1/crates/demo/0.1.0/unyank", headers=ALICE)
        assert response.json() == {"ok": True}
        assert registry.index.latest_record("demo").yanked is False

    async def test_yank_by_non_owner(self, client):
        await publish(client)
        response = await client.delete("/api/v1/crates/demo/0.1.0/yank", headers=BOB)
        assert response.status_code == 403


class TestOwnerEndpoints:
    async def test_owner_lifecycle(self, client):
        await publish(client)

        response = await client.put("/api/v1/crates/demo/owners", json={"users": ["bob@example.com"]}, headers=ALICE)
        assert response.json() == {"ok": True, "msg": "bob@example.com has been added as owners of crate demo"}

        users = (await client.get("/api/v1/crates/demo/owners")).json()["users"]
        assert [u["login"] for u in users] == ["alice@example.com", "bob@example.com"]

        response = await client.request(
            "DELETE", "/api/v1/crates/demo/owners", json={"users": ["alice@example.com"]}, headers=BOB
        )
        assert response.status_code == 200
        users = (await client.get("/api/v1/crates/demo/owners")).json()["users"]
        assert [u["login"] for u in users] == ["bob@example.com"]

    async def test_last_owner(self, client):
        await publish(client)
        response = await client.request(
            "DELETE", "/api/v1/crates/demo/owners", json={"users": ["alice@example.com"]}, headers=ALICE
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["detail"] == "cannot leave the crate without any owners"


class TestSparseIndex:
    async def test_config(self, client):
        response = await client.get("/index/config.json")
        assert response.status_code == 200
        assert response.json()["dl"].endswith("/{crate}/{version}/download")

    async def test_crate_file(self, client, registry):
        await publish(client)
        response = await client.get("/index/de/mo/demo")
        assert response.status_code == 200
        assert response.content == registry.index.raw_file("demo")

    async def test_short_name(self, client):
        await publish(client, name="ab")
        assert (await client.get("/index/2/ab")).status_code == 200

    async def test_wrong_prefix(self, client):
        await publish(client)
        assert (await client.get("/index/xx/yy/demo")).status_code == 404
        assert (await client.get("/index/de/mo/missing")).status_code == 404


class TestHealth:
    async def test_health(self, client):
        assert (await client.get("/health")).json() == {"status": "ok"}
