"""Command-line client for the objsync agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any
from urllib.parse import urlparse

import httpx

DEFAULT_SERVER = "http://127.0.0.1:8750"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2
EXIT_NOT_FOUND = 3
EXIT_UNAVAILABLE = 4


class ApiError(Exception):
    """Error response from the agent."""

    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def exit_code_for_status(status_code: int) -> int:
    """Map an HTTP status to the process exit code."""
    if status_code == 404:
        return EXIT_NOT_FOUND
    if status_code in (400, 409, 422):
        return EXIT_INVALID
    if status_code in (502, 503, 504):
        return EXIT_UNAVAILABLE
    return EXIT_FAILURE


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. http://127.0.0.1:8750)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def parse_tag(text: str, *, require_value: bool = True) -> tuple[str, str | None]:
    """``key=value`` -> ``(key, value)``."""
    key, sep, value = text.partition("=")
    if not key:
        raise ValueError(f"Invalid tag {text!r}: expected key=value")
    if not sep:
        if require_value:
            raise ValueError(f"Invalid tag {text!r}: expected key=value")
        return key, None
    return key, value


class ObjSyncClient:
    """Thin HTTP client for the agent's control surface."""

    def __init__(
        self,
        server_url: str,
        *,
        timeout: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.client = httpx.Client(base_url=self.server_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> ObjSyncClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self.client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            try:
                body = resp.json()
                detail = body.get("detail", body) if isinstance(body, dict) else body
            except ValueError:
                detail = resp.text or resp.reason_phrase
            raise ApiError(resp.status_code, detail)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def get(self, path: str, **params: Any) -> Any:
        return self.request("GET", path, params=_clean(params))

    def post(self, path: str, body: Any = None, **params: Any) -> Any:
        return self.request("POST", path, json=body, params=_clean(params))

    def put(self, path: str, body: Any = None) -> Any:
        return self.request("PUT", path, json=body)

    def patch(self, path: str, body: Any = None) -> Any:
        return self.request("PATCH", path, json=body)

    def delete(self, path: str, **params: Any) -> Any:
        return self.request("DELETE", path, params=_clean(params))

    def filter_id(self, path: str) -> int:
        result: int = self.get("/api/filters/show", path=path)["id"]
        return result


def _clean(params: dict[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        cleaned[key] = str(value).lower() if isinstance(value, bool) else value
    return cleaned


def _dump(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


# ── vfs ──────────────────────────────────────────


def cmd_vfs(client: ObjSyncClient, args: argparse.Namespace) -> Any:
    if args.vfs_command == "ls":
        listing = client.get("/api/vfs/ls", path=args.path, limit=args.limit)
        if args.json:
            return listing
        for entry in listing["entries"]:
            marker = "/" if entry["is_dir"] else ""
            size = "" if entry["is_dir"] else _format_size(entry["size"])
            print(f"{entry['kind']:<10} {size:>10}  {entry['name']}{marker}")
        if listing["total"] > len(listing["entries"]):
            print(f"... {listing['total'] - len(listing['entries'])} more")
        return None
    if args.vfs_command == "test":
        result = client.get("/api/vfs/test", path=args.path)
        if args.json:
            return result
        print("exists" if result["exists"] else "missing")
        return None if result["exists"] else EXIT_NOT_FOUND
    if args.vfs_command == "touch":
        return client.post(
            "/api/vfs/touch", {"path": args.path, "size": args.size, "mime_type": args.mime_type}
        )
    if args.vfs_command == "rm":
        return client.delete("/api/vfs/rm", path=args.path, confirm=args.confirm or None)
    if args.vfs_command == "mkdir":
        return client.post("/api/vfs/mkdir", {"path": args.path})
    if args.vfs_command == "mv":
        return client.post("/api/vfs/mv", {"source": args.source, "destination": args.destination})
    raise ValueError(f"Unknown vfs command: {args.vfs_command}")


# ── tags ─────────────────────────────────────────


def cmd_tag(client: ObjSyncClient, args: argparse.Namespace) -> Any:
    if args.tag_command == "add":
        tags = [parse_tag(t) for t in args.tags]
        result = client.post(
            "/api/tags", {"path": args.path, "tags": [{"key": k, "value": v} for k, v in tags]}
        )
    elif args.tag_command == "ls":
        result = client.get("/api/tags", path=args.path)
    elif args.tag_command == "rm":
        result = None
        for text in args.tags:
            key, value = parse_tag(text, require_value=False)
            result = client.delete("/api/tags", path=args.path, key=key, value=value)
    elif args.tag_command == "search":
        key, value = parse_tag(args.tag)
        files = client.get("/api/tags/search", key=key, value=value, limit=args.limit)
        if args.json:
            return files
        for file in files:
            print(file["virtual_path"])
        return None
    elif args.tag_command == "auto":
        return client.post("/api/tags/auto", {"path": args.path, "recursive": args.recursive})
    else:
        raise ValueError(f"Unknown tag command: {args.tag_command}")

    if args.json or result is None:
        return result
    for tag in result["tags"]:
        print(f"{tag['key']}={tag['value']}")
    return None


# ── filters ──────────────────────────────────────


def _print_results(results: dict[str, Any]) -> None:
    for file in results["files"]:
        print(f"{_format_size(file['size']):>10}  {file['virtual_path']}")
    print(f"{results['total']} matching files")


def cmd_filter(client: ObjSyncClient, args: argparse.Namespace) -> Any:
    if args.filter_command == "create":
        return client.post(
            "/api/filters",
            {
                "virtual_path": args.path,
                "query": args.query,
                "name": args.name,
                "description": args.description,
            },
        )
    if args.filter_command == "ls":
        filters = client.get("/api/filters")
        if args.json:
            return filters
        for flt in filters:
            print(f"{flt['virtual_path']:<30} {flt['query_expression']}")
        return None
    if args.filter_command == "show":
        flt = client.get("/api/filters/show", path=args.path)
        if not args.results:
            return flt
        results = client.get(f"/api/filters/{flt['id']}/results", limit=args.limit)
        if args.json:
            return results
        _print_results(results)
        return None
    if args.filter_command == "update":
        filter_id = client.filter_id(args.path)
        body = {
            "virtual_path": args.rename,
            "query": args.query,
            "name": args.name,
            "description": args.description,
        }
        return client.put(f"/api/filters/{filter_id}", {k: v for k, v in body.items() if v})
    if args.filter_command == "rm":
        client.delete(f"/api/filters/{client.filter_id(args.path)}")
        return None
    if args.filter_command == "test":
        results = client.post("/api/filters/test", {"query": args.query, "limit": args.limit})
        if args.json:
            return results
        _print_results(results)
        return None
    raise ValueError(f"Unknown filter command: {args.filter_command}")


# ── backends ─────────────────────────────────────


def cmd_backend(client: ObjSyncClient, args: argparse.Namespace) -> Any:
    if args.backend_command == "add":
        return client.post(
            "/api/backends",
            {
                "id": args.id,
                "name": args.name,
                "endpoint": args.endpoint,
                "bucket": args.bucket,
                "region": args.region,
                "use_ssl": not args.no_ssl,
                "access_key": args.access_key,
                "secret_key": args.secret_key or os.environ.get("OBJSYNC_BACKEND_SECRET_KEY"),
            },
        )
    if args.backend_command == "ls":
        backends = client.get("/api/backends")
        if args.json:
            return backends
        for backend in backends:
            print(
                f"{backend['id']:<20} {backend['endpoint']}/{backend['bucket']}  "
                f"{backend['file_count']} files, {_format_size(backend['total_size'])}"
            )
        return None
    if args.backend_command == "show":
        return client.get(f"/api/backends/{args.id}")
    if args.backend_command == "update":
        body = {
            "name": args.name,
            "endpoint": args.endpoint,
            "bucket": args.bucket,
            "region": args.region,
            "access_key": args.access_key,
            "secret_key": args.secret_key,
        }
        if args.no_ssl:
            body["use_ssl"] = False
        return client.patch(
            f"/api/backends/{args.id}", {k: v for k, v in body.items() if v is not None}
        )
    if args.backend_command == "rm":
        client.delete(f"/api/backends/{args.id}", confirm=args.confirm or None)
        return None
    if args.backend_command == "scan":
        return client.post(f"/api/backends/{args.id}/scan")
    raise ValueError(f"Unknown backend command: {args.backend_command}")


# ── sync ─────────────────────────────────────────


def _print_run(result: dict[str, Any]) -> None:
    print(f"Sync {result['name']}: {result['status']}")
    print(f"  Jobs:        {result['jobs_completed']}/{result['jobs_total']}")
    print(f"  Failed:      {result['jobs_failed']}")
    print(f"  Transferred: {_format_size(result['bytes_transferred'])}")
    for conflict in result["conflicts"]:
        print(f"    ! {conflict['path']} ({conflict['winner']} wins: {conflict['reason']})")
    for error in result["errors"]:
        print(f"    x {error}")


def cmd_sync(client: ObjSyncClient, args: argparse.Namespace) -> Any:
    if args.sync_command == "status":
        status = client.get("/api/sync/status")
        if args.json:
            return status
        print("Sync Status:")
        print(f"  Configurations: {status['total']}")
        for name, count in sorted(status["by_status"].items()):
            print(f"    {name:<10} {count}")
        print(f"  Files synced:   {status['files_synced']}")
        print(f"  Bytes synced:   {_format_size(status['bytes_synced'])}")
        print(f"  Errors:         {status['error_count']}")
        return None
    if args.sync_command == "ls":
        configs = client.get("/api/sync/configs")
        if args.json:
            return configs
        for config in configs:
            print(
                f"{config['name']:<20} {config['status']:<9} {config['direction']:<14} "
                f"{config['source_path']} -> {config['dest_path']}"
            )
        return None
    if args.sync_command == "create":
        return client.post(
            "/api/sync/configs",
            {
                "name": args.name,
                "source_path": args.source,
                "dest_path": args.dest,
                "direction": args.direction,
                "enabled": not args.disabled,
                "interval_seconds": args.interval,
                "workers": args.workers,
                "chunk_size": args.chunk_size,
                "ignore_patterns": args.ignore or [],
            },
        )
    if args.sync_command in ("pause", "resume"):
        return client.post(f"/api/sync/configs/{args.name}/{args.sync_command}")
    if args.sync_command == "rm":
        client.delete(f"/api/sync/configs/{args.name}", confirm=args.confirm or None)
        return None
    if args.sync_command == "run":
        result = client.post(f"/api/sync/configs/{args.name}/run")
        if args.json:
            return result
        _print_run(result)
        return EXIT_UNAVAILABLE if result["status"] == "error" else None
    raise ValueError(f"Unknown sync command: {args.sync_command}")


# ── local commands ───────────────────────────────


def cmd_serve(args: argparse.Namespace) -> int:
    from objsync.main import cli_entry

    cli_entry()
    return EXIT_OK


async def _migrate(args: argparse.Namespace) -> int:
    from objsync.config import Settings
    from objsync.database import MetadataStore
    from objsync.main import ensure_database_dir
    from objsync.migrations import migration_status, rollback_last, run_migrations

    settings = Settings()
    ensure_database_dir(settings.database_url)
    store = MetadataStore.from_settings(settings)
    try:
        if args.status:
            for status in await migration_status(store.engine):
                mark = "x" if status.applied else " "
                print(f"[{mark}] {status.version:>3}  {status.description}")
        elif args.rollback:
            version = await rollback_last(store.engine)
            print(f"Rolled back migration {version}" if version else "Nothing to roll back")
        else:
            applied = await run_migrations(store.engine)
            if applied:
                print("Applied migrations: " + ", ".join(str(v) for v in applied))
            else:
                print("Schema is up to date")
    finally:
        await store.dispose()
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="objsync",
        description="Unified namespace, tag filters and sync across object storage backends",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("OBJSYNC_SERVER", DEFAULT_SERVER),
        help=f"Agent URL (default: $OBJSYNC_SERVER or {DEFAULT_SERVER})",
    )
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--json", action="store_true", help="Print raw JSON responses")

    commands = parser.add_subparsers(dest="command")

    vfs = commands.add_parser("vfs", help="Browse and edit the unified namespace")
    vfs_commands = vfs.add_subparsers(dest="vfs_command", required=True)
    ls = vfs_commands.add_parser("ls", help="List a virtual directory")
    ls.add_argument("path", nargs="?", default="/")
    ls.add_argument("--limit", type=int, default=1000)
    vfs_commands.add_parser("test", help="Check whether a path exists").add_argument("path")
    touch = vfs_commands.add_parser("touch", help="Create or update file metadata")
    touch.add_argument("path")
    touch.add_argument("--size", type=int)
    touch.add_argument("--mime-type")
    rm = vfs_commands.add_parser("rm", help="Remove a file or directory")
    rm.add_argument("path")
    rm.add_argument("--confirm", action="store_true", help="Required to wipe a backend root")
    vfs_commands.add_parser("mkdir", help="Create a directory").add_argument("path")
    mv = vfs_commands.add_parser("mv", help="Move within one backend")
    mv.add_argument("source")
    mv.add_argument("destination")

    tag = commands.add_parser("tag", help="Manage file tags")
    tag_commands = tag.add_subparsers(dest="tag_command", required=True)
    tag_add = tag_commands.add_parser("add", help="Add key=value tags")
    tag_add.add_argument("path")
    tag_add.add_argument("tags", nargs="+", metavar="key=value")
    tag_commands.add_parser("ls", help="Show a file's tags").add_argument("path")
    tag_rm = tag_commands.add_parser("rm", help="Remove key=value tags, or every value of key")
    tag_rm.add_argument("path")
    tag_rm.add_argument("tags", nargs="+", metavar="key[=value]")
    tag_search = tag_commands.add_parser("search", help="Find files carrying key=value")
    tag_search.add_argument("tag", metavar="key=value")
    tag_search.add_argument("--limit", type=int, default=100)
    tag_auto = tag_commands.add_parser("auto", help="Derive tags from file metadata")
    tag_auto.add_argument("path")
    tag_auto.add_argument("--recursive", "-r", action="store_true")

    flt = commands.add_parser("filter", help="Manage tag filters")
    flt_commands = flt.add_subparsers(dest="filter_command", required=True)
    flt_create = flt_commands.add_parser("create", help="Create a filter")
    flt_create.add_argument("path")
    flt_create.add_argument("query")
    flt_create.add_argument("--name")
    flt_create.add_argument("--description")
    flt_commands.add_parser("ls", help="List filters")
    flt_show = flt_commands.add_parser("show", help="Show a filter")
    flt_show.add_argument("path")
    flt_show.add_argument("--results", action="store_true", help="Also list matching files")
    flt_show.add_argument("--limit", type=int, default=1000)
    flt_update = flt_commands.add_parser("update", help="Change a filter")
    flt_update.add_argument("path")
    flt_update.add_argument("--query")
    flt_update.add_argument("--rename", metavar="NEW_PATH")
    flt_update.add_argument("--name")
    flt_update.add_argument("--description")
    flt_commands.add_parser("rm", help="Delete a filter").add_argument("path")
    flt_test = flt_commands.add_parser("test", help="Evaluate a query without saving it")
    flt_test.add_argument("query")
    flt_test.add_argument("--limit", type=int, default=100)

    backend = commands.add_parser("backend", help="Manage storage backends")
    backend_commands = backend.add_subparsers(dest="backend_command", required=True)
    for name in ("add", "update"):
        sub = backend_commands.add_parser(name, help=f"{name.capitalize()} a backend")
        sub.add_argument("id")
        sub.add_argument("--name")
        sub.add_argument("--endpoint", required=name == "add")
        sub.add_argument("--bucket", required=name == "add")
        sub.add_argument("--region")
        sub.add_argument("--no-ssl", action="store_true")
        sub.add_argument("--access-key", required=name == "add")
        sub.add_argument(
            "--secret-key", help="Secret key (default: $OBJSYNC_BACKEND_SECRET_KEY on add)"
        )
    backend_commands.add_parser("ls", help="List backends")
    backend_commands.add_parser("show", help="Show a backend").add_argument("id")
    backend_rm = backend_commands.add_parser("rm", help="Remove a backend")
    backend_rm.add_argument("id")
    backend_rm.add_argument("--confirm", action="store_true")
    backend_commands.add_parser("scan", help="Refresh metadata from the bucket").add_argument("id")

    sync = commands.add_parser("sync", help="Manage sync configurations")
    sync_commands = sync.add_subparsers(dest="sync_command", required=True)
    sync_commands.add_parser("status", help="Aggregate sync status")
    sync_commands.add_parser("ls", help="List sync configurations")
    sync_create = sync_commands.add_parser("create", help="Create a sync configuration")
    sync_create.add_argument("name")
    sync_create.add_argument("source", help="Absolute local directory or virtual path (s3/photos)")
    sync_create.add_argument("dest", help="Absolute local directory or virtual path")
    sync_create.add_argument(
        "--direction",
        choices=["bidirectional", "upload-only", "download-only"],
        default="bidirectional",
    )
    sync_create.add_argument("--interval", type=int)
    sync_create.add_argument("--workers", type=int)
    sync_create.add_argument("--chunk-size", type=int)
    sync_create.add_argument("--ignore", action="append", metavar="PATTERN")
    sync_create.add_argument("--disabled", action="store_true")
    for name in ("pause", "resume", "run"):
        sync_commands.add_parser(name, help=f"{name.capitalize()} a sync").add_argument("name")
    sync_rm = sync_commands.add_parser("rm", help="Delete a sync configuration")
    sync_rm.add_argument("name")
    sync_rm.add_argument("--confirm", action="store_true")

    commands.add_parser("serve", help="Run the agent in the foreground")
    migrate = commands.add_parser("migrate", help="Apply metadata store migrations")
    migrate_mode = migrate.add_mutually_exclusive_group()
    migrate_mode.add_argument("--status", action="store_true", help="Show applied migrations")
    migrate_mode.add_argument(
        "--rollback", action="store_true", help="Undo the most recent migration"
    )

    return parser


_REMOTE_COMMANDS = {
    "vfs": cmd_vfs,
    "tag": cmd_tag,
    "filter": cmd_filter,
    "backend": cmd_backend,
    "sync": cmd_sync,
}


def main(argv: list[str] | None = None, *, transport: httpx.BaseTransport | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_INVALID
    if args.command == "serve":
        return cmd_serve(args)
    if args.command == "migrate":
        return asyncio.run(_migrate(args))

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID

    with ObjSyncClient(server_url, transport=transport) as client:
        try:
            result = _REMOTE_COMMANDS[args.command](client, args)
        except ApiError as exc:
            print(f"Error: {exc.detail}", file=sys.stderr)
            return exit_code_for_status(exc.status_code)
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_INVALID
        except httpx.HTTPError as exc:
            print(f"Error: cannot reach agent at {server_url}: {exc}", file=sys.stderr)
            return EXIT_UNAVAILABLE

    if isinstance(result, int):
        return result
    if result is not None:
        _dump(result)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
