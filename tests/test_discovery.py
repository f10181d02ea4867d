"""Tests for candidate discovery."""

from __future__ import annotations

import pytest

from fakes import FakeChainReader, address_topic, user
from liquidation_scanner.core.errors import SourceUnavailable
from liquidation_scanner.data.discovery import (
    ZERO_ADDRESS,
    EventDiscovery,
    EventSource,
    StaticDiscovery,
)

POOL = "0x" + "99" * 20
BORROW = "Borrow(address,address,address,uint256)"


@pytest.fixture
def source() -> EventSource:
    return EventSource(POOL, BORROW, topic_index=2)


def add_borrow(reader: FakeChainReader, source: EventSource, account: str, block: int, index: int = 0) -> None:
    reader.add_log(
        POOL,
        [source.topic0, address_topic("0x" + "01" * 20), address_topic(account)],
        block,
        log_index=index,
    )


class TestEventSource:
    """Tests for EventSource validation."""

    def test_requires_exactly_one_locator(self) -> None:
        """Should reject both or neither of topic_index and data_word."""
        with pytest.raises(ValueError):
            EventSource(POOL, BORROW)
        with pytest.raises(ValueError):
            EventSource(POOL, BORROW, topic_index=1, data_word=0)


class TestEventDiscovery:
    """Tests for EventDiscovery."""

    @pytest.mark.asyncio
    async def test_dedup_and_recency_order(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """Accounts are unique and ordered most recent first."""
        add_borrow(fake_reader, source, user(1), 100)
        add_borrow(fake_reader, source, user(2), 150)
        add_borrow(fake_reader, source, user(1), 200)
        add_borrow(fake_reader, source, user(3), 200, index=5)

        discovery = EventDiscovery(fake_reader, [source])
        users = await discovery.discover(0, 1000, max_users=10)

        assert users == [user(3), user(1), user(2)]

    @pytest.mark.asyncio
    async def test_truncates_to_max_users(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """Should keep only the most recent accounts."""
        for i in range(1, 6):
            add_borrow(fake_reader, source, user(i), 100 + i)

        discovery = EventDiscovery(fake_reader, [source])
        assert await discovery.discover(0, 1000, max_users=2) == [user(5), user(4)]
        assert await discovery.discover(0, 1000, max_users=0) == []

    @pytest.mark.asyncio
    async def test_chunked_queries(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """Block ranges are split into inclusive chunks."""
        discovery = EventDiscovery(fake_reader, [source], chunk_size=100)
        await discovery.discover(0, 249, max_users=10)

        assert [(q[1], q[2]) for q in fake_reader.log_queries] == [(0, 99), (100, 199), (200, 249)]

    @pytest.mark.asyncio
    async def test_skips_zero_address(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """The zero address is never a candidate."""
        add_borrow(fake_reader, source, ZERO_ADDRESS, 100)
        add_borrow(fake_reader, source, user(7), 90)

        discovery = EventDiscovery(fake_reader, [source])
        assert await discovery.discover(0, 1000, max_users=10) == [user(7)]

    @pytest.mark.asyncio
    async def test_data_word_source(self, fake_reader: FakeChainReader) -> None:
        """Accounts can be read from non-indexed data."""
        source = EventSource(POOL, "Supply(uint256,address)", data_word=1)
        fake_reader.add_log(POOL, [source.topic0], 10, data=bytes(32) + address_topic(user(4)))

        discovery = EventDiscovery(fake_reader, [source])
        assert await discovery.discover(0, 100, max_users=5) == [user(4)]

    @pytest.mark.asyncio
    async def test_empty_window(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """An inverted window yields nothing and issues no queries."""
        discovery = EventDiscovery(fake_reader, [source])
        assert await discovery.discover(500, 100, max_users=5) == []
        assert fake_reader.log_queries == []

    @pytest.mark.asyncio
    async def test_unreachable_logs(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """Persistent query failures surface as SourceUnavailable."""
        fake_reader.log_error = ConnectionError("refused")
        discovery = EventDiscovery(fake_reader, [source], retry_attempts=2)

        with pytest.raises(SourceUnavailable):
            await discovery.discover(0, 100, max_users=5)
        assert len(fake_reader.log_queries) == 2

    def test_invalid_chunk_size(self, fake_reader: FakeChainReader, source: EventSource) -> None:
        """Should reject non-positive chunk sizes."""
        with pytest.raises(ValueError):
            EventDiscovery(fake_reader, [source], chunk_size=0)


class TestStaticDiscovery:
    """Tests for StaticDiscovery."""

    def test_keeps_order_and_dedups(self) -> None:
        """Operator order is kept and duplicates dropped."""
        discovery = StaticDiscovery([user(3), user(1).upper().replace("0X", "0x"), user(3), user(1)])
        assert discovery.discover(10) == [user(3), user(1)]

    def test_cap(self) -> None:
        """Should cap the list at max_users."""
        discovery = StaticDiscovery([user(i) for i in range(1, 5)])
        assert discovery.discover(2) == [user(1), user(2)]
        assert discovery.discover(0) == []
