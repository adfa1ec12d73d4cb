"""
vaultledger - Share-based vault accounting and settlement engine

Tracks fractional ownership of a pooled asset: a singleton vault ledger
(NAV, total shares, share price), fragmented per-owner holding records,
request/accept workflows settled atomically, a fee-accruing NAV oracle, a
secondary-market pool with an arbitrage loop, and holding consolidation.

Usage:
    from vaultledger import (
        Ledger, VaultConfig, SettlementCoordinator,
        compute_vault_initialization, compute_request_submission, deposit_offer,
    )

    ledger = Ledger("main")
    config = VaultConfig()
    ledger.execute(compute_vault_initialization(ledger, "operator", config.fee_rate_bps))

    # Alice offers 1000 units of the backing asset
    offer = deposit_offer("alice", "operator", Decimal("1000"), ledger.current_time)
    ledger.execute(compute_request_submission(ledger, "alice", offer))

    # The operator accepts: request, holdings and vault change in one commit
    coordinator = SettlementCoordinator(ledger, config, "operator")
    receipt = coordinator.accept_deposit(offer.record_id)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    RecordChange,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    ExecuteResult,
    build_transaction,
    empty_pending_transaction,
    derive_record_id,
    require_party,
    SYSTEM_WALLET,
    VAULT_CUSTODY,
    POOL_PARTY,
    VAULT_RECORD_ID,
    POOL_RECORD_ID,
    VaultError,
    InvalidValue,
    InvalidState,
    AlreadyFinalized,
    Unauthorized,
    InsufficientShares,
    InsufficientBalance,
    InsufficientLiquidity,
    PriceMismatch,
    StaleUpdate,
    ConcurrencyConflict,
    ConservationViolation,
    RecordNotFound,
    ValuationUnavailable,
)

# Fixed-point arithmetic
from .fixed_point import (
    SHARE_DECIMAL_PLACES,
    ASSET_DECIMAL_PLACES,
    PRICE_DECIMAL_PLACES,
    to_decimal,
    quantize_amount,
    quantize_price,
    div_down,
    mul_down,
    share_price,
    shares_for_assets,
    assets_for_shares,
    bps_to_fraction,
    apply_bps,
    within_tolerance,
    spread_bps,
)

# Configuration
from .config import VaultConfig, load_config

# Record store
from .ledger import Ledger, PreparedTransaction, compute_bridge_transfer

# Vault ledger
from .vault import (
    VaultState,
    VAULT_STATUS_ACTIVE,
    VAULT_STATUS_PAUSED,
    initialize_vault,
    update_nav,
    record_mint,
    record_burn,
    pause,
    unpause,
    set_fee_rate,
    compute_vault_initialization,
    compute_nav_update,
    compute_pause,
    compute_unpause,
    compute_fee_rate_change,
)

# Holding ledger
from .holdings import (
    HoldingRecord,
    new_holding,
    total_held,
    select_records,
    spend_records,
    credit_records,
    merge_records,
    compute_holding_transfer,
    compute_consolidation,
)

# Workflows
from .workflows import (
    RequestKind,
    RequestStatus,
    WorkflowRequest,
    deposit_offer,
    withdraw_request,
    yield_claim,
    accept_request,
    cancel_request,
    reject_request,
    compute_request_submission,
    compute_cancellation,
    compute_rejection,
)

# Settlement
from .settlement import (
    SettlementReceipt,
    SettlementCoordinator,
    compute_yield_shares,
    compute_deposit_settlement,
    compute_withdraw_settlement,
    compute_yield_claim_settlement,
)

# NAV oracle
from .oracle import (
    Valuation,
    ValuationSource,
    StaticValuationSource,
    TimeSeriesValuationSource,
    OracleCycleStatus,
    OracleCycleResult,
    NavOracle,
    SECONDS_PER_YEAR,
    elapsed_seconds,
    year_fraction,
    compute_accrued_fee,
    compute_net_nav,
    compute_oracle_update,
)

# Liquidity pool
from .pool import (
    PoolState,
    SwapQuote,
    quote_sell_shares,
    quote_buy_shares,
    apply_sell_shares,
    apply_buy_shares,
    rebalance_reserves,
    compute_pool_creation,
    compute_sell_shares,
    compute_buy_shares,
    compute_rebalance,
)

# Arbitrage
from .arbitrage import (
    ArbitrageAction,
    ArbitrageDecision,
    ArbitrageTrade,
    ArbitrageResult,
    MarketMaker,
    decide,
)

# Consolidation and engine
from .consolidation import ConsolidationReport, ConsolidationScheduler
from .engine import EngineStepReport, VaultEngine

# Simulation
from .simulation import generate_gbm_path, generate_valuation_source, perturb_pool_price


__all__ = [
    # Core
    'LedgerView', 'Move', 'RecordChange', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'ExecuteResult',
    'build_transaction', 'empty_pending_transaction', 'derive_record_id', 'require_party',
    'SYSTEM_WALLET', 'VAULT_CUSTODY', 'POOL_PARTY', 'VAULT_RECORD_ID', 'POOL_RECORD_ID',
    # Errors
    'VaultError', 'InvalidValue', 'InvalidState', 'AlreadyFinalized', 'Unauthorized',
    'InsufficientShares', 'InsufficientBalance', 'InsufficientLiquidity', 'PriceMismatch',
    'StaleUpdate', 'ConcurrencyConflict', 'ConservationViolation', 'RecordNotFound',
    'ValuationUnavailable',
    # Fixed point
    'SHARE_DECIMAL_PLACES', 'ASSET_DECIMAL_PLACES', 'PRICE_DECIMAL_PLACES',
    'to_decimal', 'quantize_amount', 'quantize_price', 'div_down', 'mul_down',
    'share_price', 'shares_for_assets', 'assets_for_shares', 'bps_to_fraction',
    'apply_bps', 'within_tolerance', 'spread_bps',
    # Config
    'VaultConfig', 'load_config',
    # Ledger
    'Ledger', 'PreparedTransaction', 'compute_bridge_transfer',
    # Vault
    'VaultState', 'VAULT_STATUS_ACTIVE', 'VAULT_STATUS_PAUSED',
    'initialize_vault', 'update_nav', 'record_mint', 'record_burn', 'pause', 'unpause',
    'set_fee_rate', 'compute_vault_initialization', 'compute_nav_update', 'compute_pause',
    'compute_unpause', 'compute_fee_rate_change',
    # Holdings
    'HoldingRecord', 'new_holding', 'total_held', 'select_records', 'spend_records',
    'credit_records', 'merge_records', 'compute_holding_transfer', 'compute_consolidation',
    # Workflows
    'RequestKind', 'RequestStatus', 'WorkflowRequest', 'deposit_offer', 'withdraw_request',
    'yield_claim', 'accept_request', 'cancel_request', 'reject_request',
    'compute_request_submission', 'compute_cancellation', 'compute_rejection',
    # Settlement
    'SettlementReceipt', 'SettlementCoordinator', 'compute_yield_shares',
    'compute_deposit_settlement', 'compute_withdraw_settlement', 'compute_yield_claim_settlement',
    # Oracle
    'Valuation', 'ValuationSource', 'StaticValuationSource', 'TimeSeriesValuationSource',
    'OracleCycleStatus', 'OracleCycleResult', 'NavOracle', 'SECONDS_PER_YEAR',
    'elapsed_seconds', 'year_fraction', 'compute_accrued_fee', 'compute_net_nav', 'compute_oracle_update',
    # Pool
    'PoolState', 'SwapQuote', 'quote_sell_shares', 'quote_buy_shares', 'apply_sell_shares',
    'apply_buy_shares', 'rebalance_reserves', 'compute_pool_creation', 'compute_sell_shares',
    'compute_buy_shares', 'compute_rebalance',
    # Arbitrage
    'ArbitrageAction', 'ArbitrageDecision', 'ArbitrageTrade', 'ArbitrageResult',
    'MarketMaker', 'decide',
    # Consolidation / engine
    'ConsolidationReport', 'ConsolidationScheduler', 'EngineStepReport', 'VaultEngine',
    # Simulation
    'generate_gbm_path', 'generate_valuation_source', 'perturb_pool_price',
]

__version__ = '1.0.0'
