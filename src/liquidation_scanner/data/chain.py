"""Chain access port.

Every on-chain read the scanner performs goes through a :class:`ChainReader`:
typed view calls, event-log queries and the current block number. Protocol
adapters and swap venues depend only on this interface, so tests can swap in
an in-memory reader.

View methods are named with ``name(inputTypes)(outputTypes)`` signatures,
encoded and decoded with eth_abi.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol, TypeVar

import aiohttp
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import encode_hex, function_signature_to_4byte_selector, keccak
from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError

from liquidation_scanner.core.errors import RevertError, SourceUnavailable

T = TypeVar("T")

# Transport failures worth retrying. Reverts are deterministic and never retried.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class FunctionSignature:
    """A parsed ``name(inputs)(outputs)`` view-method signature."""

    name: str
    input_types: tuple[str, ...]
    output_types: tuple[str, ...]

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.canonical)


@dataclass(frozen=True)
class EventLog:
    """A raw log entry returned by ``eth_getLogs``."""

    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    log_index: int
    transaction_hash: str = ""

    def topic_address(self, index: int) -> str:
        """Address stored in an indexed topic."""
        return "0x" + self.topics[index][-20:].hex()

    def data_address(self, word: int) -> str:
        """Address stored in a 32-byte word of the non-indexed data."""
        chunk = self.data[word * 32 : (word + 1) * 32]
        if len(chunk) != 32:
            raise ValueError(f"log data has no word {word}")
        return "0x" + chunk[-20:].hex()


@dataclass(frozen=True)
class ViewCall:
    """One entry of a batched read."""

    address: str
    signature: str
    args: tuple[Any, ...] = ()


def _split_types(text: str) -> tuple[str, ...]:
    """Split a comma-separated ABI type list, respecting tuple parentheses."""
    if not text:
        return ()
    types: list[str] = []
    depth = 0
    current = ""
    for ch in text:
        if ch == "," and depth == 0:
            types.append(current.strip())
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    types.append(current.strip())
    return tuple(types)


def _closing_paren(text: str, start: int) -> int:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    raise ValueError(f"Unbalanced parentheses in signature: {text}")


@lru_cache(maxsize=256)
def parse_signature(signature: str) -> FunctionSignature:
    """Parse ``name(inputs)(outputs)`` into its parts.

    Args:
        signature: e.g. ``"getAccountLiquidity(address)(uint256,uint256,uint256)"``.

    Returns:
        FunctionSignature. Output types are empty when the signature omits them.

    Raises:
        ValueError: If the signature is malformed.
    """
    signature = signature.replace(" ", "")
    open_idx = signature.find("(")
    if open_idx <= 0:
        raise ValueError(f"Malformed signature: {signature}")
    name = signature[:open_idx]
    close_idx = _closing_paren(signature, open_idx)
    inputs = _split_types(signature[open_idx + 1 : close_idx])
    rest = signature[close_idx + 1 :]
    outputs: tuple[str, ...] = ()
    if rest:
        if not (rest.startswith("(") and rest.endswith(")")):
            raise ValueError(f"Malformed output list in signature: {signature}")
        outputs = _split_types(rest[1:-1])
    return FunctionSignature(name=name, input_types=inputs, output_types=outputs)


def event_topic(event_signature: str) -> bytes:
    """topic0 for an event signature such as ``Borrow(address,uint256)``."""
    return keccak(text=event_signature.replace(" ", ""))


def encode_call(signature: str, args: Sequence[Any]) -> bytes:
    """Calldata for a view call."""
    fn = parse_signature(signature)
    return fn.selector + encode(list(fn.input_types), list(args))


def decode_result(signature: str, data: bytes) -> tuple[Any, ...]:
    """Decode return data for a view call.

    Raises:
        DecodingError: If the data does not match the declared output types.
    """
    fn = parse_signature(signature)
    if not fn.output_types:
        return ()
    return tuple(decode(list(fn.output_types), data))


class ChainReader(Protocol):
    """Read-only access to one chain."""

    async def call_view(
        self,
        address: str,
        signature: str,
        args: Sequence[Any] = (),
        timeout: float | None = None,
    ) -> tuple[Any, ...]:
        """Call a view method and return its decoded outputs.

        Raises:
            asyncio.TimeoutError: If the read does not finish within ``timeout``.
            RevertError: If the call reverts or returns undecodable data.
        """
        ...

    async def batch_call(
        self,
        calls: Sequence[ViewCall],
        timeout: float | None = None,
    ) -> list[tuple[Any, ...] | Exception]:
        """Run several view calls; each slot holds a result or the exception."""
        ...

    async def get_logs(
        self,
        address: str,
        topics: Sequence[bytes | None],
        from_block: int,
        to_block: int,
        timeout: float | None = None,
    ) -> list[EventLog]:
        """Fetch logs emitted by ``address`` in an inclusive block range."""
        ...

    async def block_number(self, timeout: float | None = None) -> int:
        """Latest block number."""
        ...


class Web3ChainReader:
    """ChainReader backed by web3's AsyncWeb3 over HTTP.

    Usage:
        reader = Web3ChainReader("https://arb1.arbitrum.io/rpc")
        (hf,) = await reader.call_view(pool, "getHF(address)(uint256)", [user])
    """

    def __init__(
        self,
        rpc_url: str | None = None,
        default_timeout: float = 10.0,
        web3: AsyncWeb3 | None = None,
    ) -> None:
        """Initialize the reader.

        Args:
            rpc_url: HTTP JSON-RPC endpoint. Ignored when ``web3`` is given.
            default_timeout: Seconds allowed per read when the caller passes none.
            web3: Pre-built AsyncWeb3 instance.
        """
        if web3 is None:
            if not rpc_url:
                raise ValueError("rpc_url is required when no web3 instance is given")
            web3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.web3 = web3
        self.default_timeout = default_timeout

    async def _request(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout or self.default_timeout)
        except aiohttp.ClientError as e:
            raise ConnectionError(str(e)) from e

    async def call_view(
        self,
        address: str,
        signature: str,
        args: Sequence[Any] = (),
        timeout: float | None = None,
    ) -> tuple[Any, ...]:
        tx = {
            "to": AsyncWeb3.to_checksum_address(address),
            "data": encode_hex(encode_call(signature, _checksum_args(signature, args))),
        }
        try:
            raw = await self._request(self.web3.eth.call(tx), timeout)
        except ContractLogicError as e:
            raise RevertError(address, signature, str(e)) from e

        if not parse_signature(signature).output_types:
            return ()
        if not raw:
            # Calls to non-contracts succeed with empty data
            raise RevertError(address, signature, "empty return data")
        try:
            return decode_result(signature, bytes(raw))
        except DecodingError as e:
            raise RevertError(address, signature, f"undecodable return data: {e}") from e

    async def batch_call(
        self,
        calls: Sequence[ViewCall],
        timeout: float | None = None,
    ) -> list[tuple[Any, ...] | Exception]:
        results = await asyncio.gather(
            *(self.call_view(c.address, c.signature, c.args, timeout) for c in calls),
            return_exceptions=True,
        )
        out: list[tuple[Any, ...] | Exception] = []
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            out.append(result)
        return out

    async def get_logs(
        self,
        address: str,
        topics: Sequence[bytes | None],
        from_block: int,
        to_block: int,
        timeout: float | None = None,
    ) -> list[EventLog]:
        params = {
            "address": AsyncWeb3.to_checksum_address(address),
            "topics": [encode_hex(t) if t is not None else None for t in topics],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        raw_logs = await self._request(self.web3.eth.get_logs(params), timeout)
        return [
            EventLog(
                address=str(log["address"]).lower(),
                topics=tuple(bytes(t) for t in log["topics"]),
                data=bytes(log["data"]),
                block_number=int(log["blockNumber"]),
                log_index=int(log["logIndex"]),
                transaction_hash=encode_hex(bytes(log["transactionHash"])),
            )
            for log in raw_logs
        ]

    async def block_number(self, timeout: float | None = None) -> int:
        return int(await self._request(self.web3.eth.block_number, timeout))


def _checksum_args(signature: str, args: Sequence[Any]) -> list[Any]:
    """eth_abi accepts lowercase addresses; web3 callers often pass mixed case."""
    fn = parse_signature(signature)
    out = []
    for abi_type, value in zip(fn.input_types, args):
        if abi_type == "address" and isinstance(value, str):
            value = AsyncWeb3.to_checksum_address(value)
        out.append(value)
    return out


async def with_retries(
    call: Callable[[], Awaitable[T]],
    attempts: int,
    source: str,
    backoff_seconds: float = 0.05,
) -> T:
    """Run a read, retrying transport failures.

    Args:
        call: Zero-argument coroutine factory performing the read.
        attempts: Total number of attempts (>= 1).
        source: Name reported in SourceUnavailable.
        backoff_seconds: Linear backoff between attempts.

    Returns:
        The read's result.

    Raises:
        SourceUnavailable: If every attempt timed out or failed to connect.
        RevertError: Immediately, without retrying.
    """
    last_error: BaseException | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return await call()
        except RETRYABLE_ERRORS as e:
            last_error = e
            logger.debug(f"{source}: attempt {attempt}/{attempts} failed: {e!r}")
            if attempt < attempts:
                await asyncio.sleep(backoff_seconds * attempt)
    raise SourceUnavailable(source, f"{attempts} attempts failed ({last_error!r})")
