"""Aave-style lending pools (Aave v3, and Aave v2 forks such as Radiant).

Provides:
- Reserve configuration and oracle prices, read once per cycle
- Per-reserve user balances from the pool data provider
- The pool's native 1e18 health factor, used to verify the engine's ratio

E-mode categories are not modelled per asset; when a user's e-mode makes
the engine ratio diverge from the native health factor, the native value is
used and the mismatch is logged.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from liquidation_scanner.core.errors import EvaluationSkipped
from liquidation_scanner.data.chain import ChainReader, ViewCall
from liquidation_scanner.data.constants import (
    AAVE_BASE_CURRENCY_DECIMALS,
    AAVE_BORROW_EVENT,
    AAVE_GET_ASSETS_PRICES,
    AAVE_GET_RESERVE_CONFIGURATION,
    AAVE_GET_RESERVES_LIST,
    AAVE_GET_USER_ACCOUNT_DATA,
    AAVE_GET_USER_RESERVE_DATA,
    CLOSE_FACTOR_HF_THRESHOLD_WAD,
    DEFAULT_LIQUIDATION_BONUS_WAD,
    PERCENTAGE_FACTOR,
    WAD,
)
from liquidation_scanner.data.discovery import EventSource
from liquidation_scanner.data.models import AssetBalance, Position, RawHealthMetric, TokenAmount
from liquidation_scanner.protocols.base import ProtocolAdapter


@dataclass
class ReserveConfig:
    """Reserve configuration data."""

    asset_address: str
    decimals: int
    ltv: int  # Basis points
    liquidation_threshold: int  # Basis points (e.g., 8250 = 82.5%)
    liquidation_bonus: int  # Basis points (e.g., 10500 = 5% bonus)
    usage_as_collateral_enabled: bool
    is_active: bool
    price_wad: int = 0

    @property
    def liquidation_threshold_wad(self) -> int:
        return self.liquidation_threshold * WAD // PERCENTAGE_FACTOR

    @property
    def liquidation_bonus_wad(self) -> int:
        if self.liquidation_bonus <= PERCENTAGE_FACTOR:
            return DEFAULT_LIQUIDATION_BONUS_WAD
        return self.liquidation_bonus * WAD // PERCENTAGE_FACTOR


@dataclass
class UserAccountData:
    """Raw user account data from the pool contract."""

    total_collateral_base: int
    total_debt_base: int
    available_borrows_base: int
    current_liquidation_threshold: int  # Basis points
    ltv: int  # Basis points
    health_factor: int  # 1e18 = 1.0

    def to_metric(self) -> RawHealthMetric:
        return RawHealthMetric(
            kind="health_factor_wad",
            values={
                "total_collateral_base": self.total_collateral_base,
                "total_debt_base": self.total_debt_base,
                "current_liquidation_threshold": self.current_liquidation_threshold,
                "health_factor": self.health_factor,
            },
        )


class AaveStyleAdapter(ProtocolAdapter):
    """Adapter for Aave v3 pools and Aave v2 forks."""

    kind = "aave"

    def __init__(
        self,
        protocol_id: str,
        reader: ChainReader,
        pool: str,
        data_provider: str,
        oracle: str,
        price_decimals: int = AAVE_BASE_CURRENCY_DECIMALS,
        borrow_event: str = AAVE_BORROW_EVENT,
        **kwargs,
    ) -> None:
        """Initialize adapter.

        Args:
            protocol_id: Identifier used in reports.
            reader: Chain access port.
            pool: Pool (lending pool) address.
            data_provider: Protocol data provider address.
            oracle: Price oracle address.
            price_decimals: Decimals of oracle prices (8 for USD base currency).
            borrow_event: Borrow event signature; onBehalfOf must be topic 2.
            **kwargs: Passed to ProtocolAdapter.
        """
        super().__init__(protocol_id, reader, **kwargs)
        self.pool = pool.lower()
        self.data_provider = data_provider.lower()
        self.oracle = oracle.lower()
        self.price_decimals = price_decimals
        self.borrow_event = borrow_event
        self._reserves: list[ReserveConfig] = []

    @property
    def reserves(self) -> list[ReserveConfig]:
        return self._reserves

    def event_sources(self) -> list[EventSource]:
        return [EventSource(self.pool, self.borrow_event, topic_index=2)]

    def _price_to_wad(self, price: int) -> int:
        if self.price_decimals <= 18:
            return price * 10 ** (18 - self.price_decimals)
        return price // 10 ** (self.price_decimals - 18)

    async def _prepare(self) -> None:
        (reserve_addresses,) = await self.call(self.pool, AAVE_GET_RESERVES_LIST)
        reserve_addresses = [a.lower() for a in reserve_addresses]

        configs = await self.call_many(
            [
                ViewCall(self.data_provider, AAVE_GET_RESERVE_CONFIGURATION, (asset,))
                for asset in reserve_addresses
            ]
        )
        (prices,) = await self.call(self.oracle, AAVE_GET_ASSETS_PRICES, reserve_addresses)

        reserves = []
        for asset, config, price in zip(reserve_addresses, configs, prices):
            reserves.append(
                ReserveConfig(
                    asset_address=asset,
                    decimals=config[0],
                    ltv=config[1],
                    liquidation_threshold=config[2],
                    liquidation_bonus=config[3],
                    usage_as_collateral_enabled=config[5],
                    is_active=config[8],
                    price_wad=self._price_to_wad(price),
                )
            )
        self._reserves = reserves

    async def get_user_account_data(self, user: str) -> UserAccountData:
        result = await self.call(self.pool, AAVE_GET_USER_ACCOUNT_DATA, user)
        return UserAccountData(*result)

    async def _read_position(self, user: str) -> Position:
        account = await self.get_user_account_data(user)
        metric = account.to_metric()

        # No debt: nothing to liquidate, skip the per-reserve reads
        if account.total_debt_base == 0:
            return self._position(user, (), (), metric, ratio=None)

        reserve_data = await self.call_many(
            [
                ViewCall(self.data_provider, AAVE_GET_USER_RESERVE_DATA, (r.asset_address, user))
                for r in self._reserves
            ]
        )
        collateral, debt, bonus = self._balances(self._reserves, reserve_data)

        ratio, severe = self._evaluate(user, collateral, debt, native_ratio=account.health_factor)
        close_factor = WAD if ratio is not None and ratio < CLOSE_FACTOR_HF_THRESHOLD_WAD else WAD // 2

        return self._position(
            user,
            collateral,
            debt,
            metric,
            ratio=ratio,
            severe=severe,
            liquidation_bonus_wad=bonus,
            close_factor_wad=close_factor,
        )

    def _balances(
        self,
        reserves: Sequence[ReserveConfig],
        reserve_data: Sequence[tuple],
    ) -> tuple[list[AssetBalance], list[AssetBalance], int]:
        """Split per-reserve user data into collateral and debt balances.

        Returns:
            (collateral, debt, liquidation bonus of the largest collateral).
        """
        collateral: list[AssetBalance] = []
        debt: list[AssetBalance] = []
        bonus = DEFAULT_LIQUIDATION_BONUS_WAD
        largest_value = -1

        for reserve, data in zip(reserves, reserve_data):
            atoken_balance, stable_debt, variable_debt = data[0], data[1], data[2]
            used_as_collateral = data[8]
            if atoken_balance == 0 and stable_debt + variable_debt == 0:
                continue
            if reserve.price_wad == 0:
                raise EvaluationSkipped("missing_price")

            amount_decimals = reserve.decimals
            if (
                atoken_balance > 0
                and used_as_collateral
                and reserve.liquidation_threshold > 0
            ):
                balance = AssetBalance(
                    amount=TokenAmount(
                        token_address=reserve.asset_address,
                        raw_amount=atoken_balance,
                        decimals=amount_decimals,
                    ),
                    price_wad=reserve.price_wad,
                    liquidation_threshold_wad=reserve.liquidation_threshold_wad,
                )
                collateral.append(balance)
                value = atoken_balance * reserve.price_wad // 10**amount_decimals
                if value > largest_value:
                    largest_value = value
                    bonus = reserve.liquidation_bonus_wad

            if stable_debt + variable_debt > 0:
                debt.append(
                    AssetBalance(
                        amount=TokenAmount(
                            token_address=reserve.asset_address,
                            raw_amount=stable_debt + variable_debt,
                            decimals=amount_decimals,
                        ),
                        price_wad=reserve.price_wad,
                    )
                )

        return collateral, debt, bonus
