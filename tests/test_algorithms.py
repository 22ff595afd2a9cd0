"""Tests for feed algorithms and the algorithm registry."""

import pytest

from feedgen_storage.query import (
    WHATS_ALF,
    AlgorithmRegistry,
    FeedQueryService,
    FeedSkeleton,
    contains_ignore_case,
    default_registry,
    filtered_algorithm,
    whats_alf,
)

from conftest import make_post


class TestContainsIgnoreCase:
    @pytest.mark.parametrize(
        "record, expected",
        [
            ({"text": "This post mentions ALF the alien"}, True),
            ({"text": "Another post about alf the TV show"}, True),
            ({"text": "Half a sandwich"}, True),
            ({"text": "This is about something else entirely"}, False),
            ({"text": ""}, False),
            ({}, False),
            ({"text": 42}, False),
        ],
    )
    def test_matches(self, record, expected):
        assert contains_ignore_case("alf")(record) is expected

    def test_needle_case_is_ignored(self):
        assert contains_ignore_case("ALF")({"text": "alf"}) is True


class TestRegistry:
    def test_default_registry_has_whats_alf(self):
        registry = default_registry()
        assert registry.names() == [WHATS_ALF]
        assert registry.get("whats-alf") is whats_alf

    def test_unknown_algorithm(self):
        assert default_registry().get("non-existent-algo") is None

    def test_register_custom_algorithm(self):
        registry = AlgorithmRegistry()
        handler = filtered_algorithm(contains_ignore_case("cats"))
        registry.register("cats", handler)
        assert registry.get("cats") is handler
        assert registry.names() == ["cats"]

    def test_duplicate_shortname_rejected(self):
        registry = default_registry()
        with pytest.raises(ValueError):
            registry.register(WHATS_ALF, whats_alf)

    @pytest.mark.parametrize("shortname", ["", "a-very-long-feed-name"])
    def test_invalid_shortname_rejected(self, shortname):
        with pytest.raises(ValueError):
            AlgorithmRegistry().register(shortname, whats_alf)

    def test_shortname_length_limit(self):
        assert len(WHATS_ALF) <= 15


class TestWhatsAlf:
    @pytest.mark.asyncio
    async def test_empty_store(self, sqlite_backend):
        skeleton = await whats_alf(FeedQueryService(sqlite_backend), 10, None)
        assert skeleton == FeedSkeleton(feed=[], cursor=None)
        assert skeleton.to_dict() == {"feed": []}

    @pytest.mark.asyncio
    async def test_filters_and_paginates(self, sqlite_backend):
        posts = [
            make_post(1, text="This post mentions ALF the alien"),
            make_post(2, text="This is about something else entirely"),
            make_post(3, text="Another post about alf the TV show"),
        ]
        for post in posts:
            await sqlite_backend.create_post(post)
        service = FeedQueryService(sqlite_backend)

        first = await whats_alf(service, 1, None)
        assert first.feed == [{"post": posts[0].uri}]
        assert first.cursor is not None
        assert first.to_dict()["cursor"] == first.cursor

        second = await whats_alf(service, 1, first.cursor)
        assert second.feed == [{"post": posts[2].uri}]

        third = await whats_alf(service, 1, second.cursor)
        assert third.feed == []
        assert third.cursor is None
