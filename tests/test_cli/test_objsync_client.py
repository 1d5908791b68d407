"""Tests for the objsync command-line client."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from cli.objsync_client import (
    EXIT_FAILURE,
    EXIT_INVALID,
    EXIT_NOT_FOUND,
    EXIT_OK,
    EXIT_UNAVAILABLE,
    ApiError,
    ObjSyncClient,
    exit_code_for_status,
    main,
    parse_tag,
    validate_server_url,
)

if TYPE_CHECKING:
    from collections.abc import Callable


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)


def _json(status: int, data: Any) -> Callable[[httpx.Request], httpx.Response]:
    return lambda _request: httpx.Response(status, json=data)


class TestValidateServerUrl:
    def test_rejects_insecure_http_for_remote_hosts(self) -> None:
        with pytest.raises(ValueError, match="HTTPS is required"):
            validate_server_url("http://example.com")

    def test_allows_https_for_remote_hosts(self) -> None:
        assert validate_server_url("https://example.com/") == "https://example.com"

    def test_allows_http_for_loopback(self) -> None:
        assert validate_server_url("http://127.0.0.1:8750") == "http://127.0.0.1:8750"

    def test_allows_insecure_http_when_flag_enabled(self) -> None:
        assert (
            validate_server_url("http://nas.lan:8750", allow_insecure_http=True)
            == "http://nas.lan:8750"
        )

    def test_rejects_missing_scheme(self) -> None:
        with pytest.raises(ValueError, match="scheme and host"):
            validate_server_url("127.0.0.1:8750")


class TestParseTag:
    def test_key_value(self) -> None:
        assert parse_tag("color=red") == ("color", "red")
        assert parse_tag("note=a=b") == ("note", "a=b")
        assert parse_tag("empty=") == ("empty", "")

    def test_key_only(self) -> None:
        assert parse_tag("color", require_value=False) == ("color", None)
        with pytest.raises(ValueError, match="expected key=value"):
            parse_tag("color")

    def test_missing_key(self) -> None:
        with pytest.raises(ValueError, match="expected key=value"):
            parse_tag("=red")


class TestExitCodes:
    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (400, EXIT_INVALID),
            (404, EXIT_NOT_FOUND),
            (409, EXIT_INVALID),
            (422, EXIT_INVALID),
            (500, EXIT_FAILURE),
            (502, EXIT_UNAVAILABLE),
            (503, EXIT_UNAVAILABLE),
            (504, EXIT_UNAVAILABLE),
        ],
    )
    def test_status_mapping(self, status: int, code: int) -> None:
        assert exit_code_for_status(status) == code

    @pytest.mark.parametrize(
        ("status", "code"),
        [(404, EXIT_NOT_FOUND), (400, EXIT_INVALID), (503, EXIT_UNAVAILABLE)],
    )
    def test_main_returns_mapped_code(
        self, status: int, code: int, capsys: pytest.CaptureFixture[str]
    ) -> None:
        recorder = Recorder(_json(status, {"detail": "Backend not found: ghost"}))
        assert main(["backend", "show", "ghost"], transport=recorder.transport) == code
        assert "Backend not found: ghost" in capsys.readouterr().err

    def test_unreachable_agent(self, capsys: pytest.CaptureFixture[str]) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        recorder = Recorder(refuse)
        assert main(["sync", "status"], transport=recorder.transport) == EXIT_UNAVAILABLE
        assert "cannot reach agent" in capsys.readouterr().err

    def test_insecure_server_rejected(self, capsys: pytest.CaptureFixture[str]) -> None:
        code = main(["--server", "http://example.com", "vfs", "ls"])
        assert code == EXIT_INVALID
        assert "HTTPS is required" in capsys.readouterr().err

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == EXIT_INVALID
        assert "usage" in capsys.readouterr().out


class TestClient:
    def test_error_detail_from_json(self) -> None:
        recorder = Recorder(_json(409, {"detail": "Backend already exists: s3"}))
        with ObjSyncClient("http://127.0.0.1:8750", transport=recorder.transport) as client:
            with pytest.raises(ApiError) as excinfo:
                client.get("/api/backends/s3")
        assert excinfo.value.status_code == 409
        assert excinfo.value.detail == "Backend already exists: s3"

    def test_error_detail_from_text(self) -> None:
        recorder = Recorder(lambda _request: httpx.Response(502, text="bad gateway"))
        with ObjSyncClient("http://127.0.0.1:8750", transport=recorder.transport) as client:
            with pytest.raises(ApiError) as excinfo:
                client.get("/api/health")
        assert excinfo.value.detail == "bad gateway"

    def test_no_content(self) -> None:
        recorder = Recorder(lambda _request: httpx.Response(204))
        with ObjSyncClient("http://127.0.0.1:8750", transport=recorder.transport) as client:
            assert client.delete("/api/filters/1") is None

    def test_none_params_dropped_and_bools_lowered(self) -> None:
        recorder = Recorder(_json(200, {"removed": 1}))
        with ObjSyncClient("http://127.0.0.1:8750", transport=recorder.transport) as client:
            client.delete("/api/vfs/rm", path="/s3/a", confirm=True, value=None)
        params = recorder.requests[0].url.params
        assert dict(params) == {"path": "/s3/a", "confirm": "true"}


class TestCommands:
    def test_vfs_ls_prints_entries(self, capsys: pytest.CaptureFixture[str]) -> None:
        listing = {
            "path": "/s3",
            "total": 3,
            "entries": [
                {"name": "photos", "kind": "directory", "is_dir": True, "size": 0},
                {"name": "notes.txt", "kind": "file", "is_dir": False, "size": 2048},
            ],
        }
        recorder = Recorder(_json(200, listing))
        assert main(["vfs", "ls", "/s3"], transport=recorder.transport) == EXIT_OK
        out = capsys.readouterr().out
        assert "photos/" in out
        assert "2.0 KiB" in out
        assert "... 1 more" in out
        assert recorder.requests[0].url.params["path"] == "/s3"

    def test_vfs_test_missing_path(self, capsys: pytest.CaptureFixture[str]) -> None:
        recorder = Recorder(_json(200, {"path": "/s3/x", "exists": False, "kind": None}))
        assert main(["vfs", "test", "/s3/x"], transport=recorder.transport) == EXIT_NOT_FOUND
        assert capsys.readouterr().out.strip() == "missing"

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        recorder = Recorder(_json(200, [{"id": "s3"}]))
        assert main(["--json", "backend", "ls"], transport=recorder.transport) == EXIT_OK
        assert json.loads(capsys.readouterr().out) == [{"id": "s3"}]

    def test_tag_add_sends_pairs(self, capsys: pytest.CaptureFixture[str]) -> None:
        tags = [{"key": "color", "value": "red"}, {"key": "year", "value": "2024"}]
        recorder = Recorder(_json(200, {"tags": tags}))
        code = main(
            ["tag", "add", "/s3/car.jpg", "color=red", "year=2024"], transport=recorder.transport
        )
        assert code == EXIT_OK
        assert recorder.body() == {"path": "/s3/car.jpg", "tags": tags}
        assert capsys.readouterr().out.splitlines() == ["color=red", "year=2024"]

    def test_tag_add_rejects_bare_key(self, capsys: pytest.CaptureFixture[str]) -> None:
        recorder = Recorder(_json(200, {"tags": []}))
        assert main(["tag", "add", "/s3/a", "color"], transport=recorder.transport) == (
            EXIT_INVALID
        )
        assert recorder.requests == []
        assert "expected key=value" in capsys.readouterr().err

    def test_tag_rm_key_only(self) -> None:
        recorder = Recorder(_json(200, {"tags": []}))
        assert main(["tag", "rm", "/s3/a", "color"], transport=recorder.transport) == EXIT_OK
        assert dict(recorder.requests[0].url.params) == {"path": "/s3/a", "key": "color"}

    def test_filter_update_resolves_id(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/filters/show":
                return httpx.Response(200, json={"id": 7})
            return httpx.Response(200, json={"id": 7, "query_expression": "size>1KB"})

        recorder = Recorder(respond)
        code = main(
            ["filter", "update", "/filters/big", "--query", "size>1KB"],
            transport=recorder.transport,
        )
        assert code == EXIT_OK
        assert [r.method for r in recorder.requests] == ["GET", "PUT"]
        assert recorder.requests[1].url.path == "/api/filters/7"
        assert recorder.body() == {"query": "size>1KB"}

    def test_backend_add_reads_secret_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OBJSYNC_BACKEND_SECRET_KEY", "from-env")
        recorder = Recorder(_json(201, {"id": "s3"}))
        code = main(
            [
                "backend",
                "add",
                "s3",
                "--endpoint",
                "https://s3.example.test",
                "--bucket",
                "photos",
                "--access-key",
                "AKIA",
            ],
            transport=recorder.transport,
        )
        assert code == EXIT_OK
        body = recorder.body()
        assert body["secret_key"] == "from-env"
        assert body["use_ssl"] is True

    def test_sync_create_body(self) -> None:
        recorder = Recorder(_json(201, {"name": "photos"}))
        code = main(
            [
                "sync",
                "create",
                "photos",
                "/home/me/photos",
                "s3/photos",
                "--direction",
                "upload-only",
                "--ignore",
                "*.tmp",
            ],
            transport=recorder.transport,
        )
        assert code == EXIT_OK
        body = recorder.body()
        assert (body["source_path"], body["dest_path"]) == ("/home/me/photos", "s3/photos")
        assert body["direction"] == "upload-only"
        assert body["ignore_patterns"] == ["*.tmp"]
        assert body["enabled"] is True

    def test_sync_run_failure_exit_code(self, capsys: pytest.CaptureFixture[str]) -> None:
        result = {
            "name": "photos",
            "status": "error",
            "jobs_total": 2,
            "jobs_completed": 1,
            "jobs_failed": 1,
            "bytes_transferred": 10,
            "conflicts": [],
            "errors": ["bad.txt: Access denied"],
        }
        recorder = Recorder(_json(200, result))
        assert main(["sync", "run", "photos"], transport=recorder.transport) == EXIT_UNAVAILABLE
        out = capsys.readouterr().out
        assert "Jobs:        1/2" in out
        assert "x bad.txt: Access denied" in out
