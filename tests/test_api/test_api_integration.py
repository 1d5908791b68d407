"""Integration tests for the control surface."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

    from httpx import AsyncClient

    from tests.conftest import FakeClientFactory

BACKEND = {
    "id": "s3",
    "endpoint": "https://s3.example.test",
    "bucket": "photos",
    "access_key": "AKIAEXAMPLE",
    "secret_key": "wJalrXUtnFEMI",
}


@pytest.fixture
async def client(api_client: AsyncClient, client_factory: FakeClientFactory) -> AsyncClient:
    """A client with one scanned backend holding two objects."""
    bucket = client_factory.bucket("s3")
    bucket.put("cars/red-car.jpg", b"jpeg bytes")
    bucket.put("notes.txt", b"hello")
    resp = await api_client.post("/api/backends", json=BACKEND)
    assert resp.status_code == 201
    resp = await api_client.post("/api/backends/s3/scan")
    assert resp.status_code == 200
    return api_client


class TestHealth:
    async def test_health(self, api_client: AsyncClient) -> None:
        resp = await api_client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["database"] == "ok"
        assert data["sync_loops"] == []


class TestBackends:
    async def test_credentials_are_never_returned(self, client: AsyncClient) -> None:
        resp = await client.get("/api/backends/s3")
        assert resp.status_code == 200
        data = resp.json()
        assert "access_key" not in data
        assert "secret_key" not in data
        assert (data["file_count"], data["total_size"]) == (2, 15)

    async def test_duplicate_backend(self, client: AsyncClient) -> None:
        resp = await client.post("/api/backends", json=BACKEND)
        assert resp.status_code == 409

    async def test_reserved_identifier(self, api_client: AsyncClient) -> None:
        resp = await api_client.post("/api/backends", json={**BACKEND, "id": "filters"})
        assert resp.status_code == 400
        assert resp.json()["segment"] == "filters"

    async def test_update_and_changes(self, client: AsyncClient) -> None:
        resp = await client.patch("/api/backends/s3", json={"name": "Holiday photos"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Holiday photos"

        resp = await client.get("/api/backends/s3/changes")
        assert resp.status_code == 200
        assert sorted(c["path"] for c in resp.json()) == ["cars/red-car.jpg", "notes.txt"]

    async def test_delete_requires_confirm(self, client: AsyncClient) -> None:
        resp = await client.delete("/api/backends/s3")
        assert resp.status_code == 400
        resp = await client.delete("/api/backends/s3", params={"confirm": "true"})
        assert resp.status_code == 204
        resp = await client.get("/api/vfs/ls", params={"path": "/s3"})
        assert resp.status_code == 404


class TestVfs:
    async def test_listing(self, client: AsyncClient) -> None:
        resp = await client.get("/api/vfs/ls", params={"path": "/"})
        assert [e["name"] for e in resp.json()["entries"]] == ["s3", "filters"]

        resp = await client.get("/api/vfs/ls", params={"path": "/s3/cars"})
        assert resp.status_code == 200
        assert [e["virtual_path"] for e in resp.json()["entries"]] == ["s3/cars/red-car.jpg"]

    async def test_touch_mkdir_mv_rm(self, client: AsyncClient) -> None:
        resp = await client.post("/api/vfs/touch", json={"path": "/s3/todo.md", "size": 3})
        assert resp.status_code == 200
        assert resp.json()["size"] == 3

        resp = await client.post("/api/vfs/mkdir", json={"path": "/s3/archive"})
        assert resp.json()["is_dir"] is True

        resp = await client.post(
            "/api/vfs/mv", json={"source": "/s3/todo.md", "destination": "/s3/archive/todo.md"}
        )
        assert resp.json()["virtual_path"] == "s3/archive/todo.md"

        resp = await client.delete("/api/vfs/rm", params={"path": "/s3/archive"})
        assert resp.json()["removed"] == 1
        resp = await client.get("/api/vfs/test", params={"path": "/s3/archive/todo.md"})
        assert resp.json()["exists"] is False

    async def test_wiping_backend_needs_confirm(self, client: AsyncClient) -> None:
        resp = await client.delete("/api/vfs/rm", params={"path": "/s3"})
        assert resp.status_code == 400
        resp = await client.delete("/api/vfs/rm", params={"path": "/s3", "confirm": "true"})
        assert resp.json()["removed"] == 2


class TestTagsAndFilters:
    async def test_tag_then_filter(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/filters", json={"virtual_path": "red", "query": "tag:color=red"}
        )
        assert resp.status_code == 201
        filter_id = resp.json()["id"]

        resp = await client.get(f"/api/filters/{filter_id}/results")
        assert resp.json()["total"] == 0

        resp = await client.post(
            "/api/tags",
            json={"path": "/s3/cars/red-car.jpg", "tags": [{"key": "color", "value": "red"}]},
        )
        assert resp.status_code == 200
        assert resp.json()["tags"] == [{"key": "color", "value": "red"}]

        resp = await client.get(f"/api/filters/{filter_id}/results")
        assert [f["virtual_path"] for f in resp.json()["files"]] == ["s3/cars/red-car.jpg"]

        resp = await client.get("/api/vfs/ls", params={"path": "/filters/red"})
        assert [e["virtual_path"] for e in resp.json()["entries"]] == ["s3/cars/red-car.jpg"]

        resp = await client.get("/api/tags/search", params={"key": "color", "value": "red"})
        assert [f["path"] for f in resp.json()] == ["cars/red-car.jpg"]

        resp = await client.delete(
            "/api/tags", params={"path": "/s3/cars/red-car.jpg", "key": "color"}
        )
        assert resp.json()["tags"] == []
        resp = await client.get(f"/api/filters/{filter_id}/results")
        assert resp.json()["total"] == 0

    async def test_replace_and_auto_tag(self, client: AsyncClient) -> None:
        resp = await client.put(
            "/api/tags",
            json={"path": "/s3/notes.txt", "tags": [{"key": "project", "value": "alpha"}]},
        )
        assert resp.json()["tags"] == [{"key": "project", "value": "alpha"}]

        resp = await client.post("/api/tags/auto", json={"path": "/s3/cars"})
        assert resp.status_code == 200
        assert resp.json()["files"] == 1
        resp = await client.get("/api/tags", params={"path": "/s3/cars/red-car.jpg"})
        keys = {t["key"] for t in resp.json()["tags"]}
        assert {"extension", "type", "year", "month"} <= keys

    async def test_adhoc_query(self, client: AsyncClient) -> None:
        resp = await client.post("/api/filters/test", json={"query": 'path:"cars/*" OR size<6'})
        assert resp.status_code == 200
        assert sorted(f["path"] for f in resp.json()["files"]) == [
            "cars/red-car.jpg",
            "notes.txt",
        ]

    async def test_filter_crud(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/filters", json={"virtual_path": "filters/big", "query": "size>1MB"}
        )
        filter_id = resp.json()["id"]
        assert resp.json()["virtual_path"] == "big"

        resp = await client.get("/api/filters/show", params={"path": "/filters/big"})
        assert resp.json()["id"] == filter_id

        resp = await client.put(f"/api/filters/{filter_id}", json={"query": "size>1KB"})
        assert resp.json()["query_expression"] == "size>1KB"

        resp = await client.post("/api/filters", json={"virtual_path": "big", "query": "size>1"})
        assert resp.status_code == 409

        resp = await client.delete(f"/api/filters/{filter_id}")
        assert resp.status_code == 204
        resp = await client.get("/api/filters")
        assert resp.json() == []


class TestSync:
    async def test_create_run_and_status(
        self, client: AsyncClient, client_factory: FakeClientFactory, tmp_path: Path
    ) -> None:
        local = tmp_path / "mirror"
        local.mkdir()
        (local / "upload.txt").write_text("from disk")

        resp = await client.post(
            "/api/sync/configs",
            json={"name": "cars", "source_path": str(local), "dest_path": "s3/cars"},
        )
        assert resp.status_code == 201
        assert resp.json()["status"] == "idle"

        resp = await client.post("/api/sync/configs/cars/run")
        assert resp.status_code == 200
        run = resp.json()
        assert (run["jobs_completed"], run["jobs_failed"]) == (2, 0)
        assert (local / "red-car.jpg").read_bytes() == b"jpeg bytes"
        assert "cars/upload.txt" in client_factory.bucket("s3").objects

        resp = await client.get("/api/sync/status")
        status = resp.json()
        assert status["total"] == 1
        assert status["files_synced"] == 2
        assert status["configs"][0]["states"][0]["pending_jobs"] == 0

    async def test_pause_resume_delete(self, client: AsyncClient, tmp_path: Path) -> None:
        await client.post(
            "/api/sync/configs",
            json={
                "name": "docs",
                "source_path": "s3",
                "dest_path": str(tmp_path),
                "direction": "download-only",
            },
        )
        resp = await client.post("/api/sync/configs/docs/pause")
        assert resp.json()["status"] == "paused"
        resp = await client.post("/api/sync/configs/docs/run")
        assert resp.status_code == 409
        resp = await client.post("/api/sync/configs/docs/resume")
        assert resp.json()["status"] == "idle"

        resp = await client.delete("/api/sync/configs/docs")
        assert resp.status_code == 400
        resp = await client.delete("/api/sync/configs/docs", params={"confirm": "true"})
        assert resp.status_code == 204
        resp = await client.get("/api/sync/configs/docs")
        assert resp.status_code == 404

    async def test_invalid_endpoints(self, client: AsyncClient, tmp_path: Path) -> None:
        resp = await client.post(
            "/api/sync/configs",
            json={"name": "bad", "source_path": "s3/a", "dest_path": "s3/b"},
        )
        assert resp.status_code == 400
        resp = await client.post(
            "/api/sync/configs",
            json={"name": "bad", "source_path": str(tmp_path), "dest_path": "nowhere"},
        )
        assert resp.status_code == 404
