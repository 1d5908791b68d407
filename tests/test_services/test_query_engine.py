"""Tests for filter query evaluation against the metadata store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from objsync.exceptions import ValidationError
from objsync.schemas.filter import FilterCreate
from objsync.services import backend_service, file_service, filter_service, tag_service
from objsync.services.query_engine import (
    candidate_backends,
    compare_values,
    evaluate_query,
    uses_relative_time,
)
from objsync.services.query_parser import parse_query
from tests.conftest import TEST_SECRET_KEY, backend_create

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from objsync.models.file import File

NOW = datetime(2024, 3, 2, 12, 0, tzinfo=UTC)

CATALOG = [
    # backend, path, size, mime type, modified, tags
    ("s3", "photos/red-car.jpg", 2_000_000, "image/jpeg", datetime(2024, 1, 10, 15, 0),
     [("color", "red"), ("priority", "5")]),
    ("s3", "photos/blue-sky.png", 500_000, "image/png", datetime(2024, 2, 1, 9, 30),
     [("color", "blue"), ("priority", "high")]),
    ("s3", "docs/report.pdf", 20_000_000, "application/pdf", datetime(2023, 12, 31, 23, 0),
     [("color", "red"), ("priority", "10"), ("event", "vacation")]),
    ("selfhosted", "backup/red.tar", 100_000_000, "application/x-tar",
     datetime(2024, 3, 1, 12, 0), [("color", "red"), ("event", "vacation")]),
]  # fmt: skip


async def _add_backend(session: AsyncSession, backend_id: str) -> None:
    await backend_service.create_backend(
        session, backend_create(backend_id), TEST_SECRET_KEY, filter_namespace="filters"
    )


@pytest.fixture
async def catalog(db_session: AsyncSession) -> dict[str, File]:
    """Two active backends plus a removed one whose files must never match."""
    for backend_id in ("s3", "selfhosted", "gone"):
        await _add_backend(db_session, backend_id)

    files: dict[str, File] = {}
    for backend_id, path, size, mime_type, modified, tags in CATALOG:
        file, _kind = await file_service.upsert_file(
            db_session,
            backend_id,
            path,
            size=size,
            mime_type=mime_type,
            modified_at=modified.replace(tzinfo=UTC),
            client_id="test-client",
        )
        for key, value in tags:
            await tag_service.add_tag(db_session, file, key, value)
        files[file.virtual_path] = file

    ghost, _kind = await file_service.upsert_file(
        db_session, "gone", "red.jpg", size=1, client_id="test-client"
    )
    await tag_service.add_tag(db_session, ghost, "color", "red")
    await backend_service.delete_backend(db_session, "gone")
    await db_session.commit()
    return files


async def _paths(session: AsyncSession, query: str) -> list[str]:
    return [m.virtual_path for m in await evaluate_query(session, query, now=NOW)]


class TestCompareValues:
    def test_equality_is_exact_string_match(self) -> None:
        assert compare_values("red", "=", "red")
        assert not compare_values("4.0", "=", "4")

    def test_numeric_coercion(self) -> None:
        assert compare_values("10", ">", "9")
        assert compare_values("4.5", "<=", "4.5")
        assert not compare_values("10", "<", "9")

    def test_mixed_values_fall_back_to_strings(self) -> None:
        assert compare_values("high", ">", "4")
        assert not compare_values("high", "<", "4")

    def test_non_finite_numbers_compare_as_strings(self) -> None:
        assert compare_values("nan", ">", "1")


class TestEvaluateQuery:
    async def test_tag_equality(self, db_session: AsyncSession, catalog: dict[str, File]) -> None:
        assert await _paths(db_session, "tag:color=red") == [
            "s3/docs/report.pdf",
            "s3/photos/red-car.jpg",
            "selfhosted/backup/red.tar",
        ]

    async def test_numeric_tag_comparison(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        assert await _paths(db_session, "tag:priority<=5") == ["s3/photos/red-car.jpg"]
        assert await _paths(db_session, "tag:priority>4") == [
            "s3/docs/report.pdf",
            "s3/photos/blue-sky.png",
            "s3/photos/red-car.jpg",
        ]

    async def test_and_requires_both_tags(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        assert await _paths(db_session, "tag:color=red AND tag:event=vacation") == [
            "s3/docs/report.pdf",
            "selfhosted/backup/red.tar",
        ]

    async def test_or_and_precedence(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        query = "tag:color=blue OR tag:color=red AND backend:selfhosted"
        assert await _paths(db_session, query) == [
            "s3/photos/blue-sky.png",
            "selfhosted/backup/red.tar",
        ]

    async def test_not_complements_active_files_only(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        # directories and files of removed backends are outside the universe
        assert await _paths(db_session, "NOT tag:color=red") == ["s3/photos/blue-sky.png"]
        assert await _paths(db_session, "tag:color=red AND NOT backend:selfhosted") == [
            "s3/docs/report.pdf",
            "s3/photos/red-car.jpg",
        ]

    async def test_unknown_backend_yields_nothing(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        assert await _paths(db_session, "backend:nowhere") == []
        assert await _paths(db_session, "backend:gone") == []

    async def test_mime_type_glob_is_case_insensitive(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        assert await _paths(db_session, "mime_type:image/*") == [
            "s3/photos/blue-sky.png",
            "s3/photos/red-car.jpg",
        ]
        assert await _paths(db_session, "mime_type:IMAGE/JPEG") == ["s3/photos/red-car.jpg"]

    async def test_path_glob(self, db_session: AsyncSession, catalog: dict[str, File]) -> None:
        assert await _paths(db_session, "path:photos/*.jpg") == ["s3/photos/red-car.jpg"]
        assert await _paths(db_session, "path:*.tar") == ["selfhosted/backup/red.tar"]

    async def test_size(self, db_session: AsyncSession, catalog: dict[str, File]) -> None:
        assert await _paths(db_session, "size>10MB") == [
            "s3/docs/report.pdf",
            "selfhosted/backup/red.tar",
        ]
        assert await _paths(db_session, "size<=500KB") == ["s3/photos/blue-sky.png"]

    @pytest.mark.parametrize(
        ("query", "expected"),
        [
            ("modified_time=2024-01-10", ["s3/photos/red-car.jpg"]),
            ("modified_time<2024-01-01", ["s3/docs/report.pdf"]),
            ("modified_time<=2024-01-10", ["s3/docs/report.pdf", "s3/photos/red-car.jpg"]),
            ("modified_time>2024-01-10", ["s3/photos/blue-sky.png", "selfhosted/backup/red.tar"]),
            ("modified_time>=2024-02-01", ["s3/photos/blue-sky.png", "selfhosted/backup/red.tar"]),
            ("modified_time>2024-02-01T09:00Z", [
                "s3/photos/blue-sky.png", "selfhosted/backup/red.tar"
            ]),
        ],
    )  # fmt: skip
    async def test_absolute_time(
        self,
        db_session: AsyncSession,
        catalog: dict[str, File],
        query: str,
        expected: list[str],
    ) -> None:
        assert await _paths(db_session, query) == expected

    async def test_relative_time_uses_evaluation_time(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        assert await _paths(db_session, "modified_time>now-2d") == ["selfhosted/backup/red.tar"]
        assert await _paths(db_session, "modified_time>now") == []

    async def test_results_are_deterministic(
        self, db_session: AsyncSession, catalog: dict[str, File]
    ) -> None:
        first = await evaluate_query(db_session, "size>0", now=NOW)
        second = await evaluate_query(db_session, "size>0", now=NOW)
        assert first == second
        assert [(m.backend_id, m.path) for m in first] == sorted(
            (m.backend_id, m.path) for m in first
        )

    async def test_malformed_query(self, db_session: AsyncSession) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await evaluate_query(db_session, "tag:color=red AND (")
        assert exc_info.value.position == 19


class TestQueryAnalysis:
    @pytest.mark.parametrize(
        ("query", "expected"),
        [
            ("tag:a=1", None),
            ("backend:s3", frozenset({"s3"})),
            ("backend:s3 AND tag:a=1", frozenset({"s3"})),
            ("backend:s3 OR backend:b2", frozenset({"s3", "b2"})),
            ("backend:s3 OR tag:a=1", None),
            ("NOT backend:s3", None),
            ("backend:s3 AND backend:b2", frozenset()),
        ],
    )
    def test_candidate_backends(self, query: str, expected: frozenset[str] | None) -> None:
        assert candidate_backends(parse_query(query)) == expected

    def test_uses_relative_time(self) -> None:
        assert uses_relative_time(parse_query("tag:a=1 OR NOT modified_time>now-1h"))
        assert not uses_relative_time(parse_query("modified_time>2024-01-01"))


class TestSelfhostedScenario:
    async def test_tag_filter_follows_tag_changes(self, db_session: AsyncSession) -> None:
        await _add_backend(db_session, "selfhosted")
        pic, _kind = await file_service.upsert_file(
            db_session, "selfhosted", "pic.jpg", size=1024, client_id="test-client"
        )
        await tag_service.add_tag(db_session, pic, "colour", "red")
        flt = await filter_service.create_filter(
            db_session,
            FilterCreate(virtual_path="filters/pictures/red", query="tag:colour=red"),
            filter_namespace="filters",
        )
        assert flt.virtual_path == "pictures/red"

        matches = await filter_service.evaluate_filter(db_session, flt)
        assert [m.virtual_path for m in matches] == ["selfhosted/pic.jpg"]

        await tag_service.remove_tag(db_session, pic, "colour")
        assert await filter_service.evaluate_filter(db_session, flt) == []

    async def test_untagged_file_appears_once_tagged(self, db_session: AsyncSession) -> None:
        await _add_backend(db_session, "selfhosted")
        pic, _kind = await file_service.upsert_file(
            db_session, "selfhosted", "pic.jpg", size=1024, client_id="test-client"
        )
        assert await evaluate_query(db_session, "tag:colour=red") == []
        await tag_service.add_tag(db_session, pic, "colour", "red")
        assert [m.path for m in await evaluate_query(db_session, "tag:colour=red")] == [
            "pic.jpg"
        ]
