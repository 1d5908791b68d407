"""Tests for virtual path classification."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from hypothesis import given
from hypothesis import strategies as st

from objsync.exceptions import InvalidPathError, NotFoundError
from objsync.schemas.filter import FilterCreate
from objsync.services import backend_service, filter_service
from objsync.services.path_resolver import (
    PathKind,
    normalize_path,
    resolve_path,
    split_path,
    validate_backend_id,
)
from tests.conftest import TEST_SECRET_KEY, backend_create

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

_segment = st.text(
    alphabet=st.characters(exclude_characters="/", exclude_categories=("Cs",)),
    min_size=1,
    max_size=12,
).filter(lambda s: s.strip() == s and s not in {".", ".."})


class TestSplitPath:
    def test_slashes_are_insignificant(self) -> None:
        assert split_path("/s3/photos//2024/") == ["s3", "photos", "2024"]
        assert normalize_path("//s3///a/") == "s3/a"

    def test_empty_and_root(self) -> None:
        assert split_path("") == []
        assert split_path("/") == []
        assert split_path("   ") == []

    @pytest.mark.parametrize("path", ["s3/../etc", "./s3", "s3/a/./b"])
    def test_relative_segments_rejected(self, path: str) -> None:
        with pytest.raises(InvalidPathError) as exc_info:
            split_path(path)
        assert exc_info.value.segment in {".", ".."}

    @given(st.lists(_segment, min_size=1, max_size=6))
    def test_join_then_split_is_identity(self, segments: list[str]) -> None:
        assert split_path("/".join(segments)) == segments
        assert split_path("/" + "//".join(segments) + "/") == segments


class TestValidateBackendId:
    @pytest.mark.parametrize("backend_id", ["s3", "my-backend_2", "A1"])
    def test_valid(self, backend_id: str) -> None:
        assert validate_backend_id(backend_id) == backend_id

    @pytest.mark.parametrize(
        "backend_id", ["", ".hidden", "has space", "dot.ted", "slash/ed", "ünï"]
    )
    def test_invalid_characters(self, backend_id: str) -> None:
        with pytest.raises(InvalidPathError):
            validate_backend_id(backend_id)

    def test_reserved_namespace(self) -> None:
        with pytest.raises(InvalidPathError, match="reserved"):
            validate_backend_id("filters")
        with pytest.raises(InvalidPathError, match="reserved"):
            validate_backend_id("views", filter_namespace="views")
        assert validate_backend_id("filters", filter_namespace="views") == "filters"


class TestResolvePath:
    async def test_root(self, db_session: AsyncSession) -> None:
        resolved = await resolve_path(db_session, "/")
        assert resolved.kind == PathKind.ROOT
        assert resolved.virtual_path == ""

    async def test_backend_with_remainder(self, db_session: AsyncSession) -> None:
        await backend_service.create_backend(
            db_session, backend_create("s3"), TEST_SECRET_KEY, filter_namespace="filters"
        )
        resolved = await resolve_path(db_session, "/s3/photos/2024/")
        assert resolved.kind == PathKind.BACKEND
        assert resolved.namespace == "s3"
        assert resolved.remainder == "photos/2024"
        assert resolved.backend is not None
        assert resolved.virtual_path == "s3/photos/2024"

    async def test_backend_root(self, db_session: AsyncSession) -> None:
        await backend_service.create_backend(
            db_session, backend_create("s3"), TEST_SECRET_KEY, filter_namespace="filters"
        )
        resolved = await resolve_path(db_session, "s3")
        assert resolved.kind == PathKind.BACKEND
        assert resolved.remainder == ""

    async def test_unknown_backend(self, db_session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await resolve_path(db_session, "nowhere/file.txt")

    async def test_removed_backend_is_unknown(self, db_session: AsyncSession) -> None:
        await backend_service.create_backend(
            db_session, backend_create("old"), TEST_SECRET_KEY, filter_namespace="filters"
        )
        await backend_service.delete_backend(db_session, "old")
        with pytest.raises(NotFoundError):
            await resolve_path(db_session, "old")

    async def test_invalid_backend_segment(self, db_session: AsyncSession) -> None:
        with pytest.raises(InvalidPathError) as exc_info:
            await resolve_path(db_session, "bad.id/file")
        assert exc_info.value.segment == "bad.id"

    async def test_filter_root(self, db_session: AsyncSession) -> None:
        resolved = await resolve_path(db_session, "filters/")
        assert resolved.kind == PathKind.FILTER_ROOT

    async def test_filter_path(self, db_session: AsyncSession) -> None:
        await filter_service.create_filter(
            db_session,
            FilterCreate(virtual_path="pictures/red", query="tag:color=red"),
            filter_namespace="filters",
        )
        resolved = await resolve_path(db_session, "/filters/pictures/red")
        assert resolved.kind == PathKind.FILTER
        assert resolved.filter is not None
        assert resolved.filter.query_expression == "tag:color=red"

    async def test_unknown_filter(self, db_session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await resolve_path(db_session, "filters/missing")

    async def test_custom_namespace(self, db_session: AsyncSession) -> None:
        resolved = await resolve_path(db_session, "views", filter_namespace="views")
        assert resolved.kind == PathKind.FILTER_ROOT
