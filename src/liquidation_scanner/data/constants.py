"""Constants for the Arbitrum lending protocols and swap venues we scan.

Contract addresses, view-method signatures, event signatures and protocol
parameters. Method signatures use the ``name(inputs)(outputs)`` form read by
:func:`liquidation_scanner.data.chain.parse_signature`.
"""

from __future__ import annotations

# =============================================================================
# Fixed-point bases
# =============================================================================

WAD = 10**18

# Percentage factor used by Aave-style reserve configs (10000 = 100%)
PERCENTAGE_FACTOR = 10000

# Aave v3 reports base-currency values with 8 decimals
AAVE_BASE_CURRENCY_DECIMALS = 8

# Compound and Cauldron mantissas are 1e18 and 1e5 respectively
COMPOUND_MANTISSA = 10**18
CAULDRON_PRECISION = 10**5

# =============================================================================
# Liquidation parameters
# =============================================================================

DEFAULT_CLOSE_FACTOR_WAD = WAD // 2  # 50%
DEFAULT_LIQUIDATION_BONUS_WAD = WAD * 105 // 100  # 5% bonus

# Aave v3 allows 100% close factor below this health factor
CLOSE_FACTOR_HF_THRESHOLD_WAD = WAD * 95 // 100

# Maximum allowed relative difference between computed and native ratio
HEALTH_VERIFICATION_TOLERANCE_WAD = WAD // 1000  # 0.1%

# =============================================================================
# Lending protocol deployments (Arbitrum)
# =============================================================================
#
# Each entry names its adapter kind. Entries can be overridden or extended
# with a JSON deployments file (see ScannerSettings.deployments_file).

DEFAULT_PROTOCOL_DEPLOYMENTS: dict[str, dict[str, object]] = {
    "aave_v3": {
        "kind": "aave",
        "pool": "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
        "data_provider": "0x69FA688f1Dc47d4B5d8029D5a35FB7a548310654",
        "oracle": "0xb56c2F0B653B2e0b10C9b928C8580Ac5Df02C7C7",
        "price_decimals": AAVE_BASE_CURRENCY_DECIMALS,
    },
    "radiant": {
        "kind": "aave",
        "pool": "0xF4B1486DD74D07706052A33d31d7c0AAFD0659E1",
        "data_provider": "0x596B0cc4c5094507C50b579a662FE7e7b094A2cC",
        "oracle": "0xC0cE5De939aaD880b0bdDcf9aB5750a53EDa454b",
        "price_decimals": AAVE_BASE_CURRENCY_DECIMALS,
        # Aave v2 Borrow layout
        "borrow_event": "Borrow(address,address,address,uint256,uint256,uint256,uint16)",
    },
    "compound": {
        "kind": "compound",
        "comptroller": "0x3d9819210a31b4961b30ef54be2aed79b9c9cd3b",
    },
    "cream": {
        "kind": "compound",
        "comptroller": "0x3d5bc3c8b89d4791cdac0ad0f64b11a0f5b8867c",
    },
    "morpho": {
        "kind": "morpho",
        "lens": "0x777777c9898d384f785ee44acfe945efdfaba0f3",
    },
    "abracadabra": {
        "kind": "cauldron",
        # Cauldron list must be supplied by the deployments file
        "cauldrons": [],
    },
    "llamalend": {
        "kind": "llamalend",
        # Controller list must be supplied by the deployments file
        "controllers": [],
    },
}

# =============================================================================
# Swap venue deployments (Arbitrum)
# =============================================================================

DEFAULT_FEE_TIERS = [100, 500, 3000, 10000]

DEFAULT_VENUE_DEPLOYMENTS: dict[str, dict[str, object]] = {
    "uniswap_v3": {
        "kind": "uniswap_v3",
        "quoter": "0xb27308f9F90D607463bb33eA1BeBb41C27CE5AB6",
        "fee_tiers": DEFAULT_FEE_TIERS,
    },
    "sushiswap_v2": {
        "kind": "uniswap_v2",
        "router": "0x1b02dA8Cb0d097eB8D57A175b88c7D8b47997506",
    },
    "camelot": {
        "kind": "uniswap_v2",
        "router": "0xc873fEcbd354f5A56E00E710B90EF4201db2448d",
    },
    "curve": {
        "kind": "curve",
        "pools": [
            # 2pool (USDC.e / USDT)
            {"address": "0x7f90122BF0700F9E7e1F688fe926940E8839F353", "n_coins": 2},
        ],
    },
    "maverick_v2": {
        "kind": "maverick_v2",
        "quoter": "0xb40AfdB85a07f37aE217E7D6462e609900dD8D7A",
        # Pool list must be supplied by the deployments file
        "pools": [],
    },
}

# =============================================================================
# Common Arbitrum Tokens
# =============================================================================

ARBITRUM_TOKENS = {
    "WETH": {
        "address": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "decimals": 18,
        "symbol": "WETH",
    },
    "USDC.e": {
        "address": "0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8",
        "decimals": 6,
        "symbol": "USDC.e",
    },
    "USDT": {
        "address": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        "decimals": 6,
        "symbol": "USDT",
    },
    "DAI": {
        "address": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
        "decimals": 18,
        "symbol": "DAI",
    },
    "WBTC": {
        "address": "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f",
        "decimals": 8,
        "symbol": "WBTC",
    },
    "ARB": {
        "address": "0x912CE59144191C1204E64559FE8253a0e49E6548",
        "decimals": 18,
        "symbol": "ARB",
    },
}

# Intermediate tokens tried for two-hop routes on constant-product routers
DEFAULT_CONNECTOR_TOKENS = [
    ARBITRUM_TOKENS["WETH"]["address"],
    ARBITRUM_TOKENS["USDC.e"]["address"],
]

# =============================================================================
# View-method signatures
# =============================================================================

# Aave-style pool / data provider / oracle
AAVE_GET_USER_ACCOUNT_DATA = (
    "getUserAccountData(address)(uint256,uint256,uint256,uint256,uint256,uint256)"
)
AAVE_GET_RESERVES_LIST = "getReservesList()(address[])"
AAVE_GET_RESERVE_CONFIGURATION = (
    "getReserveConfigurationData(address)"
    "(uint256,uint256,uint256,uint256,uint256,bool,bool,bool,bool,bool)"
)
AAVE_GET_USER_RESERVE_DATA = (
    "getUserReserveData(address,address)"
    "(uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint40,bool)"
)
AAVE_GET_ASSETS_PRICES = "getAssetsPrices(address[])(uint256[])"

# Compound-style comptroller / cToken / oracle
COMPOUND_GET_ALL_MARKETS = "getAllMarkets()(address[])"
COMPOUND_GET_ACCOUNT_LIQUIDITY = "getAccountLiquidity(address)(uint256,uint256,uint256)"
COMPOUND_GET_ASSETS_IN = "getAssetsIn(address)(address[])"
COMPOUND_MARKETS = "markets(address)(bool,uint256,bool)"
COMPOUND_ORACLE = "oracle()(address)"
COMPOUND_CLOSE_FACTOR = "closeFactorMantissa()(uint256)"
COMPOUND_LIQUIDATION_INCENTIVE = "liquidationIncentiveMantissa()(uint256)"
CTOKEN_GET_ACCOUNT_SNAPSHOT = "getAccountSnapshot(address)(uint256,uint256,uint256,uint256)"
CTOKEN_UNDERLYING = "underlying()(address)"
ORACLE_GET_UNDERLYING_PRICE = "getUnderlyingPrice(address)(uint256)"

# ERC20
ERC20_DECIMALS = "decimals()(uint8)"

# Abracadabra cauldron / BentoBox
CAULDRON_COLLATERAL = "collateral()(address)"
CAULDRON_BENTOBOX = "bentoBox()(address)"
CAULDRON_MAGIC_INTERNET_MONEY = "magicInternetMoney()(address)"
CAULDRON_USER_COLLATERAL_SHARE = "userCollateralShare(address)(uint256)"
CAULDRON_USER_BORROW_PART = "userBorrowPart(address)(uint256)"
CAULDRON_TOTAL_BORROW = "totalBorrow()(uint128,uint128)"
CAULDRON_EXCHANGE_RATE = "exchangeRate()(uint256)"
CAULDRON_COLLATERIZATION_RATE = "COLLATERIZATION_RATE()(uint256)"
CAULDRON_LIQUIDATION_MULTIPLIER = "LIQUIDATION_MULTIPLIER()(uint256)"
BENTOBOX_TO_AMOUNT = "toAmount(address,uint256,bool)(uint256)"

# LlamaLend controller / LLAMMA
LLAMALEND_COLLATERAL_TOKEN = "collateral_token()(address)"
LLAMALEND_BORROWED_TOKEN = "borrowed_token()(address)"
LLAMALEND_AMM = "amm()(address)"
LLAMALEND_LIQUIDATION_DISCOUNT = "liquidation_discount()(uint256)"
LLAMALEND_USER_STATE = "user_state(address)(uint256[4])"
LLAMALEND_HEALTH = "health(address,bool)(int256)"
LLAMMA_PRICE_ORACLE = "price_oracle()(uint256)"

# Morpho-Aave lens
MORPHO_GET_USER_BALANCE_STATES = (
    "getUserBalanceStates(address)(uint256,uint256,uint256,uint256)"
)
MORPHO_GET_USER_HEALTH_FACTOR = "getUserHealthFactor(address)(uint256)"

# Swap venues
UNISWAP_V2_GET_AMOUNTS_OUT = "getAmountsOut(uint256,address[])(uint256[])"
UNISWAP_V3_QUOTE_EXACT_INPUT_SINGLE = (
    "quoteExactInputSingle(address,address,uint24,uint256,uint160)(uint256)"
)
CURVE_COINS = "coins(uint256)(address)"
CURVE_GET_DY = "get_dy(int128,int128,uint256)(uint256)"
MAVERICK_V2_TOKEN_A = "tokenA()(address)"
MAVERICK_V2_TOKEN_B = "tokenB()(address)"
MAVERICK_V2_CALCULATE_SWAP = (
    "calculateSwap(address,uint128,bool,bool,int32)(uint256,uint256,uint256)"
)

# =============================================================================
# Event signatures (for user discovery)
# =============================================================================

# Aave v3 pool: user is indexed topic 2 (onBehalfOf)
AAVE_BORROW_EVENT = "Borrow(address,address,address,uint256,uint8,uint256,uint16)"

# Compound cToken: borrower is data word 0, nothing indexed
COMPOUND_BORROW_EVENT = "Borrow(address,uint256,uint256,uint256)"

# Cauldron: `from` is indexed topic 1
CAULDRON_LOG_BORROW_EVENT = "LogBorrow(address,address,uint256,uint256)"

# LlamaLend controller: user is indexed topic 1
LLAMALEND_BORROW_EVENT = "Borrow(address,uint256,uint256)"
