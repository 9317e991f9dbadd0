"""
lending - Collateralized Lending & Liquidation Engine

Users borrow one asset against collateral deposited in another, interest
accrues lazily on every touch, and positions past their liquidation
threshold are liquidated directly or through a collateral auction.

Usage:
    from lending import (
        Ledger, LendingProtocol, OracleAdapter, StaticPriceOracle, RoleRegistry,
        AuthorizationContext, CollateralConfig, MarketConfig, token,
        ROLE_ADMIN, ROLE_BORROWER,
    )

    ledger = Ledger("main", datetime(2024, 1, 1))
    ledger.register_unit(token("USDC", "USD Coin", 6))
    ledger.register_unit(token("ETH", "Ether"))
    ledger.register_wallet("alice")

    prices = StaticPriceOracle()
    prices.set_prices({"ETH": 2000, "USDC": 1}, ledger.current_time)
    protocol = LendingProtocol(ledger, OracleAdapter(prices))

    roles = RoleRegistry({"admin": [ROLE_ADMIN], "alice": [ROLE_BORROWER]})
    admin = AuthorizationContext("admin", roles)
    alice = AuthorizationContext("alice", roles)

    protocol.configure_collateral(admin, CollateralConfig("ETH"))
    protocol.configure_market(admin, MarketConfig("USDC", max_ltv_bp=5000, liquidation_threshold_bp=6000))
    protocol.deposit(alice, "ETH", Decimal("1"))
    position_id = protocol.create_position(alice, "USDC", "ETH", Decimal("1000"), Decimal("1"))
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    ChangeSet,
    token,
    record_unit,
    SYSTEM_WALLET,
    TREASURY_WALLET,
    COLLATERAL_VAULT,
    LIQUIDITY_POOL,
    AUCTION_ESCROW,
    BPS,
    SECONDS_PER_YEAR,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_COLLATERAL_ACCOUNT,
    UNIT_TYPE_COLLATERAL_TYPE,
    UNIT_TYPE_MARKET,
    UNIT_TYPE_POSITION,
    UNIT_TYPE_LIQUIDATION,
    UNIT_TYPE_AUCTION,
    # Exceptions
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    ProtocolError,
    ValidationError,
    ConfigurationError,
    AuthorizationError,
    StateError,
    EconomicError,
    StalePriceError,
)

# Ledger
from .ledger import Ledger

# Prices
from .oracle import (
    PriceData,
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    OracleAdapter,
)

# Access control
from .access import (
    AuthorizationContext,
    CapabilityChecker,
    RoleRegistry,
    ROLE_ADMIN,
    ROLE_RISK_MANAGER,
    ROLE_BORROWER,
    ROLE_LIQUIDATOR,
    ROLE_COLLATERAL_MANAGER,
)

from .guard import ReentrancyGuard

# Configuration
from .config import (
    LiquidationMode,
    RateModelParams,
    LiquidationConfig,
    MarketConfig,
    CollateralConfig,
    ProtocolSettings,
    ProtocolConfig,
    parse_protocol_config,
    load_protocol_config,
)

# Interest rate model
from .rate_model import (
    InterestRateModel,
    RateSample,
    calculate_utilization,
    calculate_borrow_rate,
    calculate_supply_rate,
    calculate_rates,
    calculate_interest,
)

# Collateral ledger
from .collateral import (
    CollateralAccount,
    CollateralLedger,
    load_collateral_account,
)

# Markets
from .markets import (
    MarketState,
    MarketRates,
    MarketRegistry,
    load_market,
)

# Borrow positions
from .positions import (
    BorrowPosition,
    PositionHealth,
    PositionStatus,
    RiskLevel,
    PositionEngine,
    calculate_accrual,
    calculate_ltv,
    calculate_health,
    load_position,
)

# Liquidation
from .liquidation import (
    LiquidationRecord,
    AuctionState,
    DirectLiquidationQuote,
    LiquidationEngine,
    calculate_direct_liquidation,
    calculate_penalty_split,
    calculate_auction_price,
)

from .protocol import LendingProtocol
from .logging_setup import configure_logging

__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionOrigin', 'OriginType',
    'build_transaction', 'Unit', 'UnitStateChange', 'ExecuteResult', 'ChangeSet', 'token', 'record_unit',
    'SYSTEM_WALLET', 'TREASURY_WALLET', 'COLLATERAL_VAULT', 'LIQUIDITY_POOL', 'AUCTION_ESCROW',
    'BPS', 'SECONDS_PER_YEAR',
    'UNIT_TYPE_TOKEN', 'UNIT_TYPE_COLLATERAL_ACCOUNT', 'UNIT_TYPE_COLLATERAL_TYPE', 'UNIT_TYPE_MARKET',
    'UNIT_TYPE_POSITION', 'UNIT_TYPE_LIQUIDATION', 'UNIT_TYPE_AUCTION',
    # Exceptions
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation', 'TransferRuleViolation',
    'UnitNotRegistered', 'WalletNotRegistered', 'ProtocolError', 'ValidationError',
    'ConfigurationError', 'AuthorizationError', 'StateError', 'EconomicError', 'StalePriceError',
    # Ledger
    'Ledger',
    # Prices
    'PriceData', 'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPriceOracle', 'OracleAdapter',
    # Access
    'AuthorizationContext', 'CapabilityChecker', 'RoleRegistry', 'ReentrancyGuard',
    'ROLE_ADMIN', 'ROLE_RISK_MANAGER', 'ROLE_BORROWER', 'ROLE_LIQUIDATOR', 'ROLE_COLLATERAL_MANAGER',
    # Configuration
    'LiquidationMode', 'RateModelParams', 'LiquidationConfig', 'MarketConfig', 'CollateralConfig',
    'ProtocolSettings', 'ProtocolConfig', 'parse_protocol_config', 'load_protocol_config',
    # Rate model
    'InterestRateModel', 'RateSample', 'calculate_utilization', 'calculate_borrow_rate',
    'calculate_supply_rate', 'calculate_rates', 'calculate_interest',
    # Collateral
    'CollateralAccount', 'CollateralLedger', 'load_collateral_account',
    # Markets
    'MarketState', 'MarketRates', 'MarketRegistry', 'load_market',
    # Positions
    'BorrowPosition', 'PositionHealth', 'PositionStatus', 'RiskLevel', 'PositionEngine',
    'calculate_accrual', 'calculate_ltv', 'calculate_health', 'load_position',
    # Liquidation
    'LiquidationRecord', 'AuctionState', 'DirectLiquidationQuote', 'LiquidationEngine',
    'calculate_direct_liquidation', 'calculate_penalty_split', 'calculate_auction_price',
    # Facade
    'LendingProtocol', 'configure_logging',
]

__version__ = '1.0.0'
