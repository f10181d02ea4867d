"""Compound v2 style comptrollers (Compound, Cream and other forks).

The comptroller reports solvency as a (liquidity, shortfall) pair rather than
a ratio. An exact ratio is rebuilt from the user's markets:

    collateral_i = cTokenBalance_i * exchangeRate_i / 1e18   (underlying units)
    ratio        = Sum(collateral_i * price_i * collateralFactor_i) / Sum(borrow_j * price_j)

When the rebuilt ratio and the comptroller disagree on liquidatability, the
comptroller wins: the ratio is derived from its (liquidity, shortfall) pair
and the rebuilt debt total. When the per-market breakdown cannot be read,
the sign of the shortfall decides: shortfall > 0 gives ratio 0, otherwise
ratio 1.0.
"""

from __future__ import annotations

from dataclasses import dataclass

from liquidation_scanner.core.errors import EvaluationSkipped, RevertError
from liquidation_scanner.core.logging import LogCategory
from liquidation_scanner.data.chain import ChainReader, ViewCall
from liquidation_scanner.data.constants import (
    ARBITRUM_TOKENS,
    COMPOUND_BORROW_EVENT,
    COMPOUND_CLOSE_FACTOR,
    COMPOUND_GET_ACCOUNT_LIQUIDITY,
    COMPOUND_GET_ALL_MARKETS,
    COMPOUND_GET_ASSETS_IN,
    COMPOUND_LIQUIDATION_INCENTIVE,
    COMPOUND_MANTISSA,
    COMPOUND_MARKETS,
    COMPOUND_ORACLE,
    CTOKEN_GET_ACCOUNT_SNAPSHOT,
    CTOKEN_UNDERLYING,
    ERC20_DECIMALS,
    ORACLE_GET_UNDERLYING_PRICE,
    WAD,
)
from liquidation_scanner.data.discovery import EventSource
from liquidation_scanner.data.health_factor import asset_value_wad
from liquidation_scanner.data.models import AssetBalance, Position, RawHealthMetric, TokenAmount
from liquidation_scanner.protocols.base import ProtocolAdapter

WETH_ADDRESS = ARBITRUM_TOKENS["WETH"]["address"].lower()


def shortfall_ratio(liquidity: int, shortfall: int, debt_value_wad: int) -> int:
    """Ratio implied by the comptroller: (debt + liquidity - shortfall) / debt.

    Liquidity and shortfall are in the oracle's 1e18 quote unit, as is the
    debt value. Without debt a shortfall gives ratio 0.
    """
    if debt_value_wad <= 0:
        return 0 if shortfall > 0 else WAD
    adjusted = max(debt_value_wad + liquidity - shortfall, 0)
    return adjusted * WAD // debt_value_wad


@dataclass
class MarketInfo:
    """A listed cToken market."""

    ctoken: str
    underlying: str
    underlying_decimals: int
    collateral_factor_wad: int
    price_wad: int  # One whole underlying token, 1e18-scaled


class CompoundStyleAdapter(ProtocolAdapter):
    """Adapter for Compound v2 comptrollers and their forks."""

    kind = "compound"

    def __init__(
        self,
        protocol_id: str,
        reader: ChainReader,
        comptroller: str,
        **kwargs,
    ) -> None:
        """Initialize adapter.

        Args:
            protocol_id: Identifier used in reports.
            reader: Chain access port.
            comptroller: Comptroller (unitroller) address.
            **kwargs: Passed to ProtocolAdapter.
        """
        super().__init__(protocol_id, reader, **kwargs)
        self.comptroller = comptroller.lower()
        self._markets: dict[str, MarketInfo] = {}
        self._close_factor_wad = WAD // 2
        self._liquidation_incentive_wad = WAD

    @property
    def markets(self) -> dict[str, MarketInfo]:
        return self._markets

    def event_sources(self) -> list[EventSource]:
        return [
            EventSource(ctoken, COMPOUND_BORROW_EVENT, data_word=0)
            for ctoken in sorted(self._markets)
        ]

    async def _prepare(self) -> None:
        (ctokens,) = await self.call(self.comptroller, COMPOUND_GET_ALL_MARKETS)
        ctokens = [c.lower() for c in ctokens]
        (oracle,) = await self.call(self.comptroller, COMPOUND_ORACLE)
        (close_factor,) = await self.call(self.comptroller, COMPOUND_CLOSE_FACTOR)
        (incentive,) = await self.call(self.comptroller, COMPOUND_LIQUIDATION_INCENTIVE)
        self._close_factor_wad = close_factor * WAD // COMPOUND_MANTISSA
        self._liquidation_incentive_wad = incentive * WAD // COMPOUND_MANTISSA

        market_data = await self.call_many(
            [ViewCall(self.comptroller, COMPOUND_MARKETS, (c,)) for c in ctokens]
        )
        prices = await self.call_many(
            [ViewCall(oracle, ORACLE_GET_UNDERLYING_PRICE, (c,)) for c in ctokens]
        )

        markets: dict[str, MarketInfo] = {}
        for ctoken, (is_listed, collateral_factor, *_), (price,) in zip(
            ctokens, market_data, prices
        ):
            if not is_listed:
                continue
            underlying, decimals = await self._underlying(ctoken)
            # Oracle prices are scaled by 1e(36 - underlying decimals)
            price_wad = price * 10**decimals // COMPOUND_MANTISSA
            markets[ctoken] = MarketInfo(
                ctoken=ctoken,
                underlying=underlying,
                underlying_decimals=decimals,
                collateral_factor_wad=collateral_factor * WAD // COMPOUND_MANTISSA,
                price_wad=price_wad,
            )
        self._markets = markets

    async def _underlying(self, ctoken: str) -> tuple[str, int]:
        """Underlying token and its decimals.

        The native-ETH market has no underlying(); it is valued and quoted as WETH.
        """
        try:
            (underlying,) = await self.call(ctoken, CTOKEN_UNDERLYING)
        except RevertError:
            return WETH_ADDRESS, 18
        (decimals,) = await self.call(underlying, ERC20_DECIMALS)
        return underlying.lower(), decimals

    async def _read_position(self, user: str) -> Position:
        error, liquidity, shortfall = await self.call(
            self.comptroller, COMPOUND_GET_ACCOUNT_LIQUIDITY, user
        )
        if error != 0:
            raise EvaluationSkipped("comptroller_error")

        metric = RawHealthMetric(
            kind="liquidity_shortfall",
            values={"error": error, "liquidity": liquidity, "shortfall": shortfall},
        )

        try:
            collateral, debt = await self._breakdown(user)
        except (RevertError, EvaluationSkipped) as e:
            ratio = 0 if shortfall > 0 else WAD
            self.ctx.logger.debug(
                f"Breakdown unavailable for {user}, using shortfall sign",
                LogCategory.EVALUATION,
                protocol=self.protocol_id,
                data={"user_address": user, "error": str(e), "ratio": str(ratio)},
            )
            return self._position(
                user,
                (),
                (),
                metric,
                ratio=ratio,
                liquidation_bonus_wad=self._liquidation_incentive_wad,
                close_factor_wad=self._close_factor_wad,
            )

        ratio, severe = self._evaluate(user, collateral, debt)
        liquidatable = ratio is not None and ratio < WAD
        if liquidatable != (shortfall > 0):
            native = shortfall_ratio(
                liquidity, shortfall, sum((asset_value_wad(d) for d in debt), 0)
            )
            self._log_mismatch(user, collateral, debt, native)
            ratio = native

        return self._position(
            user,
            collateral,
            debt,
            metric,
            ratio=ratio,
            severe=severe,
            liquidation_bonus_wad=self._liquidation_incentive_wad,
            close_factor_wad=self._close_factor_wad,
        )

    async def _breakdown(self, user: str) -> tuple[list[AssetBalance], list[AssetBalance]]:
        (assets_in,) = await self.call(self.comptroller, COMPOUND_GET_ASSETS_IN, user)
        assets_in = [a.lower() for a in assets_in]

        unknown = [a for a in assets_in if a not in self._markets]
        if unknown:
            raise EvaluationSkipped("unknown_market")

        snapshots = await self.call_many(
            [ViewCall(ctoken, CTOKEN_GET_ACCOUNT_SNAPSHOT, (user,)) for ctoken in assets_in]
        )

        collateral: list[AssetBalance] = []
        debt: list[AssetBalance] = []
        for ctoken, (error, ctoken_balance, borrow_balance, exchange_rate) in zip(
            assets_in, snapshots
        ):
            if error != 0:
                raise EvaluationSkipped("snapshot_error")
            market = self._markets[ctoken]
            if market.price_wad == 0 and (ctoken_balance or borrow_balance):
                raise EvaluationSkipped("missing_price")

            supplied = ctoken_balance * exchange_rate // COMPOUND_MANTISSA
            if supplied > 0 and market.collateral_factor_wad > 0:
                collateral.append(
                    AssetBalance(
                        amount=TokenAmount(
                            token_address=market.underlying,
                            raw_amount=supplied,
                            decimals=market.underlying_decimals,
                        ),
                        price_wad=market.price_wad,
                        liquidation_threshold_wad=market.collateral_factor_wad,
                    )
                )
            if borrow_balance > 0:
                debt.append(
                    AssetBalance(
                        amount=TokenAmount(
                            token_address=market.underlying,
                            raw_amount=borrow_balance,
                            decimals=market.underlying_decimals,
                        ),
                        price_wad=market.price_wad,
                    )
                )
        return collateral, debt
