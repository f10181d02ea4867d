"""Collateralized-debt-position cauldrons (Abracadabra).

Each cauldron is an isolated market: one collateral token, MIM debt. A
cauldron considers a user solvent when

    toAmount(collateralShare) * COLLATERIZATION_RATE / 1e5 * 1e18
        >= borrowPart * totalBorrow.elastic / totalBorrow.base * exchangeRate

where ``exchangeRate`` is the amount of collateral worth 1 MIM, 1e18-scaled.
Values are normalized in MIM terms. A user present in several cauldrons is
reported with the cauldron closest to liquidation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import (
    BENTOBOX_TO_AMOUNT,
    CAULDRON_BENTOBOX,
    CAULDRON_COLLATERAL,
    CAULDRON_COLLATERIZATION_RATE,
    CAULDRON_EXCHANGE_RATE,
    CAULDRON_LIQUIDATION_MULTIPLIER,
    CAULDRON_LOG_BORROW_EVENT,
    CAULDRON_MAGIC_INTERNET_MONEY,
    CAULDRON_PRECISION,
    CAULDRON_TOTAL_BORROW,
    CAULDRON_USER_BORROW_PART,
    CAULDRON_USER_COLLATERAL_SHARE,
    ERC20_DECIMALS,
    WAD,
)
from liquidation_scanner.data.discovery import EventSource
from liquidation_scanner.data.models import AssetBalance, Position, RawHealthMetric, TokenAmount
from liquidation_scanner.protocols.base import ProtocolAdapter, sort_ratio


@dataclass
class CauldronState:
    """Per-cycle state of one cauldron."""

    address: str
    collateral: str
    collateral_decimals: int
    bentobox: str
    mim: str
    exchange_rate: int
    collaterization_rate: int  # 1e5 precision
    liquidation_multiplier: int  # 1e5 precision
    total_borrow_elastic: int
    total_borrow_base: int

    @property
    def collateral_price_wad(self) -> int:
        """Value of one whole collateral token in MIM, 1e18-scaled."""
        if self.exchange_rate == 0:
            return 0
        return 10**self.collateral_decimals * WAD // self.exchange_rate

    def debt_amount(self, borrow_part: int) -> int:
        if self.total_borrow_base == 0:
            return 0
        return borrow_part * self.total_borrow_elastic // self.total_borrow_base


class CauldronAdapter(ProtocolAdapter):
    """Adapter for a set of Abracadabra cauldrons."""

    kind = "cauldron"

    def __init__(
        self,
        protocol_id: str,
        reader: ChainReader,
        cauldrons: Sequence[str],
        **kwargs,
    ) -> None:
        """Initialize adapter.

        Args:
            protocol_id: Identifier used in reports.
            reader: Chain access port.
            cauldrons: Cauldron addresses to scan.
            **kwargs: Passed to ProtocolAdapter.
        """
        super().__init__(protocol_id, reader, **kwargs)
        self.cauldrons = [c.lower() for c in cauldrons]
        self._states: list[CauldronState] = []

    @property
    def states(self) -> list[CauldronState]:
        return self._states

    def event_sources(self) -> list[EventSource]:
        return [
            EventSource(cauldron, CAULDRON_LOG_BORROW_EVENT, topic_index=1)
            for cauldron in self.cauldrons
        ]

    async def _prepare(self) -> None:
        states = []
        for cauldron in self.cauldrons:
            (collateral,) = await self.call(cauldron, CAULDRON_COLLATERAL)
            (bentobox,) = await self.call(cauldron, CAULDRON_BENTOBOX)
            (mim,) = await self.call(cauldron, CAULDRON_MAGIC_INTERNET_MONEY)
            (exchange_rate,) = await self.call(cauldron, CAULDRON_EXCHANGE_RATE)
            (collaterization_rate,) = await self.call(cauldron, CAULDRON_COLLATERIZATION_RATE)
            (liquidation_multiplier,) = await self.call(cauldron, CAULDRON_LIQUIDATION_MULTIPLIER)
            elastic, base = await self.call(cauldron, CAULDRON_TOTAL_BORROW)
            (decimals,) = await self.call(collateral, ERC20_DECIMALS)
            states.append(
                CauldronState(
                    address=cauldron,
                    collateral=collateral.lower(),
                    collateral_decimals=decimals,
                    bentobox=bentobox.lower(),
                    mim=mim.lower(),
                    exchange_rate=exchange_rate,
                    collaterization_rate=collaterization_rate,
                    liquidation_multiplier=liquidation_multiplier,
                    total_borrow_elastic=elastic,
                    total_borrow_base=base,
                )
            )
        self._states = states

    async def _read_position(self, user: str) -> Position:
        worst: Position | None = None
        for index, state in enumerate(self._states):
            position = await self._read_cauldron(user, index, state)
            if position is None:
                continue
            if worst is None or sort_ratio(position) < sort_ratio(worst):
                worst = position

        if worst is None:
            return self._position(
                user, (), (), RawHealthMetric(kind="collateralization"), ratio=None
            )
        return worst

    async def _read_cauldron(
        self, user: str, index: int, state: CauldronState
    ) -> Position | None:
        (borrow_part,) = await self.call(state.address, CAULDRON_USER_BORROW_PART, user)
        if borrow_part == 0:
            return None
        (share,) = await self.call(state.address, CAULDRON_USER_COLLATERAL_SHARE, user)
        (collateral_amount,) = await self.call(
            state.bentobox, BENTOBOX_TO_AMOUNT, state.collateral, share, False
        )
        debt_amount = state.debt_amount(borrow_part)

        collateral = [
            AssetBalance(
                amount=TokenAmount(
                    token_address=state.collateral,
                    raw_amount=collateral_amount,
                    decimals=state.collateral_decimals,
                ),
                price_wad=state.collateral_price_wad,
                liquidation_threshold_wad=state.collaterization_rate * WAD // CAULDRON_PRECISION,
            )
        ] if collateral_amount > 0 else []
        debt = [
            AssetBalance(
                amount=TokenAmount(token_address=state.mim, raw_amount=debt_amount, decimals=18),
                price_wad=WAD,
            )
        ] if debt_amount > 0 else []

        metric = RawHealthMetric(
            kind="collateralization",
            values={
                "cauldron_index": index,
                "collateral_share": share,
                "collateral_amount": collateral_amount,
                "borrow_part": borrow_part,
                "debt_amount": debt_amount,
                "exchange_rate": state.exchange_rate,
                "collaterization_rate": state.collaterization_rate,
            },
        )
        ratio, severe = self._evaluate(user, collateral, debt)
        return self._position(
            user,
            collateral,
            debt,
            metric,
            ratio=ratio,
            severe=severe,
            liquidation_bonus_wad=state.liquidation_multiplier * WAD // CAULDRON_PRECISION,
            # Cauldrons allow the whole position to be closed
            close_factor_wad=WAD,
        )