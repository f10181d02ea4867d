"""Peer-to-pool optimizers (Morpho-Aave) read through the Morpho lens.

Morpho keeps no enumerable registry of borrowers and its events are spread
across the underlying pool, so candidates come only from a watch-list.

The lens reports aggregate values in the pool's base currency:
(collateral value, borrowable value, max debt value, debt value). The
position is normalized with one aggregate collateral balance whose
threshold is max_debt / collateral, so the engine ratio is
max_debt / debt, the value Morpho itself compares against 1.
"""

from __future__ import annotations

from liquidation_scanner.data.chain import ChainReader
from liquidation_scanner.data.constants import (
    ARBITRUM_TOKENS,
    MORPHO_GET_USER_BALANCE_STATES,
    MORPHO_GET_USER_HEALTH_FACTOR,
    WAD,
)
from liquidation_scanner.data.models import AssetBalance, Position, RawHealthMetric, TokenAmount
from liquidation_scanner.protocols.base import ProtocolAdapter


class MorphoAdapter(ProtocolAdapter):
    """Adapter for Morpho-Aave positions (watch-list discovery only)."""

    kind = "morpho"

    def __init__(
        self,
        protocol_id: str,
        reader: ChainReader,
        lens: str,
        base_token: str = ARBITRUM_TOKENS["WETH"]["address"],
        verify_native: bool = True,
        **kwargs,
    ) -> None:
        """Initialize adapter.

        Args:
            protocol_id: Identifier used in reports.
            reader: Chain access port.
            lens: Morpho lens address.
            base_token: Token the lens values are denominated in.
            verify_native: Cross-check against the lens health factor.
            **kwargs: Passed to ProtocolAdapter.
        """
        super().__init__(protocol_id, reader, **kwargs)
        self.lens = lens.lower()
        self.base_token = base_token.lower()
        self.verify_native = verify_native

    async def _read_position(self, user: str) -> Position:
        collateral_value, borrowable, max_debt, debt_value = await self.call(
            self.lens, MORPHO_GET_USER_BALANCE_STATES, user
        )
        metric = RawHealthMetric(
            kind="liquidity_data",
            values={
                "collateral_value": collateral_value,
                "borrowable_value": borrowable,
                "max_debt_value": max_debt,
                "debt_value": debt_value,
            },
        )

        collateral = []
        if collateral_value > 0:
            collateral.append(
                AssetBalance(
                    amount=TokenAmount(
                        token_address=self.base_token,
                        raw_amount=collateral_value,
                        decimals=18,
                    ),
                    price_wad=WAD,
                    liquidation_threshold_wad=min(max_debt * WAD // collateral_value, WAD),
                )
            )
        debt = []
        if debt_value > 0:
            debt.append(
                AssetBalance(
                    amount=TokenAmount(
                        token_address=self.base_token, raw_amount=debt_value, decimals=18
                    ),
                    price_wad=WAD,
                )
            )

        native = None
        if self.verify_native and debt_value > 0:
            (native,) = await self.call(self.lens, MORPHO_GET_USER_HEALTH_FACTOR, user)

        ratio, severe = self._evaluate(user, collateral, debt, native_ratio=native)
        return self._position(user, collateral, debt, metric, ratio=ratio, severe=severe)
