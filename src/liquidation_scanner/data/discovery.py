"""Candidate discovery for lending protocols.

Two strategies:
- EventDiscovery scans protocol events (borrows, supplies) over a block
  window and extracts the account each event refers to.
- StaticDiscovery returns an operator-supplied watch-list.

Both deduplicate and cap the result at ``max_users``. Event results are
ordered most-recently-active first; static results keep operator order.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from loguru import logger

from liquidation_scanner.data.chain import ChainReader, EventLog, event_topic, with_retries

ZERO_ADDRESS = "0x" + "00" * 20

DEFAULT_LOG_CHUNK_SIZE = 5000


@dataclass(frozen=True)
class EventSource:
    """An event that identifies candidate accounts.

    Exactly one of ``topic_index`` (indexed parameter) or ``data_word``
    (non-indexed parameter, counted in 32-byte words) locates the account.
    """

    address: str
    event_signature: str
    topic_index: int | None = None
    data_word: int | None = None

    def __post_init__(self) -> None:
        if (self.topic_index is None) == (self.data_word is None):
            raise ValueError("EventSource needs exactly one of topic_index or data_word")

    @property
    def topic0(self) -> bytes:
        return event_topic(self.event_signature)

    def extract_user(self, log: EventLog) -> str:
        """Account address referenced by a log from this source."""
        if self.topic_index is not None:
            return log.topic_address(self.topic_index)
        assert self.data_word is not None
        return log.data_address(self.data_word)


class EventDiscovery:
    """Discover accounts from protocol event logs.

    Usage:
        discovery = EventDiscovery(reader, [EventSource(pool, BORROW, topic_index=2)])
        users = await discovery.discover(from_block, to_block, max_users=200)
    """

    def __init__(
        self,
        reader: ChainReader,
        sources: Sequence[EventSource],
        chunk_size: int = DEFAULT_LOG_CHUNK_SIZE,
        call_timeout: float | None = None,
        retry_attempts: int = 3,
    ) -> None:
        """Initialize discovery.

        Args:
            reader: Chain access port.
            sources: Events to scan.
            chunk_size: Max blocks per log query.
            call_timeout: Seconds allowed per log query.
            retry_attempts: Attempts per log query before the source is
                reported unavailable.
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.reader = reader
        self.sources = list(sources)
        self.chunk_size = chunk_size
        self.call_timeout = call_timeout
        self.retry_attempts = retry_attempts

    async def _fetch(self, source: EventSource, start: int, end: int) -> list[EventLog]:
        return await with_retries(
            lambda: self.reader.get_logs(
                source.address, [source.topic0], start, end, self.call_timeout
            ),
            self.retry_attempts,
            source=f"logs:{source.address.lower()}",
        )

    async def discover(self, from_block: int, to_block: int, max_users: int) -> list[str]:
        """Return up to ``max_users`` distinct accounts, most recent first.

        Args:
            from_block: First block (inclusive).
            to_block: Last block (inclusive).
            max_users: Result cap.

        Returns:
            Lowercase addresses ordered by (block desc, log index desc, address asc).

        Raises:
            SourceUnavailable: If a log query keeps failing.
        """
        if max_users <= 0 or to_block < from_block:
            return []

        last_seen: dict[str, tuple[int, int]] = {}
        for source in self.sources:
            for start in range(from_block, to_block + 1, self.chunk_size):
                end = min(start + self.chunk_size - 1, to_block)
                logs = await self._fetch(source, start, end)
                for log in logs:
                    try:
                        user = source.extract_user(log)
                    except (IndexError, ValueError) as e:
                        logger.debug(f"Undecodable log at block {log.block_number}: {e}")
                        continue
                    if user == ZERO_ADDRESS:
                        continue
                    seen_at = (log.block_number, log.log_index)
                    if user not in last_seen or seen_at > last_seen[user]:
                        last_seen[user] = seen_at

        ordered = sorted(
            last_seen, key=lambda a: (-last_seen[a][0], -last_seen[a][1], a)
        )
        if len(ordered) > max_users:
            logger.debug(f"Truncating {len(ordered)} discovered accounts to {max_users}")
        return ordered[:max_users]


class StaticDiscovery:
    """Operator watch-list. Keeps the given order, drops duplicates."""

    def __init__(self, addresses: Iterable[str]) -> None:
        seen: set[str] = set()
        self.addresses: list[str] = []
        for address in addresses:
            normalized = address.strip().lower()
            if not normalized.startswith("0x"):
                normalized = "0x" + normalized
            if normalized in seen:
                continue
            seen.add(normalized)
            self.addresses.append(normalized)

    def discover(self, max_users: int) -> list[str]:
        if max_users <= 0:
            return []
        return self.addresses[:max_users]
