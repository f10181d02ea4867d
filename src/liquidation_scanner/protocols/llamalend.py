"""LlamaLend (Curve lending) controllers.

Each controller is an isolated market: one collateral token deposited into a
LLAMMA (soft-liquidation AMM), one borrowed token. ``user_state`` returns

    (collateral, borrowed_in_amm, debt, n_bands)

where ``borrowed_in_amm`` is collateral already converted by soft
liquidation. The controller's own ``health`` is a signed 1e18 value that
turns negative when the position can be hard-liquidated, so the native
ratio is ``1 + health``, floored at zero.

Values are normalized in borrowed-token terms: the AMM's ``price_oracle`` is
the value of one whole collateral token in borrowed tokens, 1e18-scaled.
Both collateral legs are discounted by ``liquidation_discount``. A user
present in several controllers is reported with the riskiest one.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import (
    ERC20_DECIMALS,
    LLAMALEND_AMM,
    LLAMALEND_BORROW_EVENT,
    LLAMALEND_BORROWED_TOKEN,
    LLAMALEND_COLLATERAL_TOKEN,
    LLAMALEND_HEALTH,
    LLAMALEND_LIQUIDATION_DISCOUNT,
    LLAMALEND_USER_STATE,
    LLAMMA_PRICE_ORACLE,
    WAD,
)
from liquidation_scanner.data.discovery import EventSource
from liquidation_scanner.data.models import AssetBalance, Position, RawHealthMetric, TokenAmount
from liquidation_scanner.protocols.base import ProtocolAdapter, sort_ratio


@dataclass
class ControllerState:
    """Per-cycle state of one LlamaLend market."""

    address: str
    amm: str
    collateral: str
    collateral_decimals: int
    borrowed: str
    borrowed_decimals: int
    price_wad: int  # One whole collateral token in borrowed tokens
    liquidation_discount_wad: int

    @property
    def threshold_wad(self) -> int:
        return max(WAD - self.liquidation_discount_wad, 0)


class LlamaLendAdapter(ProtocolAdapter):
    """Adapter for a set of LlamaLend controllers."""

    kind = "llamalend"

    def __init__(
        self,
        protocol_id: str,
        reader: ChainReader,
        controllers: Sequence[str],
        **kwargs,
    ) -> None:
        """Initialize adapter.

        Args:
            protocol_id: Identifier used in reports.
            reader: Chain access port.
            controllers: Market controller addresses to scan.
            **kwargs: Passed to ProtocolAdapter.
        """
        super().__init__(protocol_id, reader, **kwargs)
        self.controllers = [c.lower() for c in controllers]
        self._states: list[ControllerState] = []

    @property
    def states(self) -> list[ControllerState]:
        return self._states

    def event_sources(self) -> list[EventSource]:
        return [
            EventSource(controller, LLAMALEND_BORROW_EVENT, topic_index=1)
            for controller in self.controllers
        ]

    async def _prepare(self) -> None:
        states = []
        for controller in self.controllers:
            (collateral,) = await self.call(controller, LLAMALEND_COLLATERAL_TOKEN)
            (borrowed,) = await self.call(controller, LLAMALEND_BORROWED_TOKEN)
            (amm,) = await self.call(controller, LLAMALEND_AMM)
            (discount,) = await self.call(controller, LLAMALEND_LIQUIDATION_DISCOUNT)
            (price,) = await self.call(amm, LLAMMA_PRICE_ORACLE)
            (collateral_decimals,) = await self.call(collateral, ERC20_DECIMALS)
            (borrowed_decimals,) = await self.call(borrowed, ERC20_DECIMALS)
            states.append(
                ControllerState(
                    address=controller,
                    amm=amm.lower(),
                    collateral=collateral.lower(),
                    collateral_decimals=collateral_decimals,
                    borrowed=borrowed.lower(),
                    borrowed_decimals=borrowed_decimals,
                    price_wad=price,
                    liquidation_discount_wad=discount,
                )
            )
        self._states = states

    async def _read_position(self, user: str) -> Position:
        worst: Position | None = None
        for index, state in enumerate(self._states):
            position = await self._read_market(user, index, state)
            if position is None:
                continue
            if worst is None or sort_ratio(position) < sort_ratio(worst):
                worst = position

        if worst is None:
            return self._position(user, (), (), RawHealthMetric(kind="llamma_health"), ratio=None)
        return worst

    async def _read_market(
        self, user: str, index: int, state: ControllerState
    ) -> Position | None:
        (user_state,) = await self.call(state.address, LLAMALEND_USER_STATE, user)
        collateral_amount, borrowed_in_amm, debt_amount, n_bands = user_state
        if debt_amount == 0:
            return None
        (health,) = await self.call(state.address, LLAMALEND_HEALTH, user, False)

        collateral: list[AssetBalance] = []
        if collateral_amount > 0:
            collateral.append(
                AssetBalance(
                    amount=TokenAmount(
                        token_address=state.collateral,
                        raw_amount=collateral_amount,
                        decimals=state.collateral_decimals,
                    ),
                    price_wad=state.price_wad,
                    liquidation_threshold_wad=state.threshold_wad,
                )
            )
        if borrowed_in_amm > 0:
            collateral.append(
                AssetBalance(
                    amount=TokenAmount(
                        token_address=state.borrowed,
                        raw_amount=borrowed_in_amm,
                        decimals=state.borrowed_decimals,
                    ),
                    price_wad=WAD,
                    liquidation_threshold_wad=state.threshold_wad,
                )
            )
        debt = [
            AssetBalance(
                amount=TokenAmount(
                    token_address=state.borrowed,
                    raw_amount=debt_amount,
                    decimals=state.borrowed_decimals,
                ),
                price_wad=WAD,
            )
        ]

        metric = RawHealthMetric(
            kind="llamma_health",
            values={
                "controller_index": index,
                "collateral": collateral_amount,
                "borrowed_in_amm": borrowed_in_amm,
                "debt": debt_amount,
                "n_bands": n_bands,
                "health": health,
                "price_oracle": state.price_wad,
            },
        )
        native = max(WAD + health, 0)
        ratio, severe = self._evaluate(user, collateral, debt, native_ratio=native)
        return self._position(
            user,
            collateral,
            debt,
            metric,
            ratio=ratio,
            severe=severe,
            liquidation_bonus_wad=WAD + state.liquidation_discount_wad,
            # Hard liquidation closes the whole loan
            close_factor_wad=WAD,
        )
