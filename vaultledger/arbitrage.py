"""
arbitrage.py - Market maker closing the gap between pool price and NAV

Pool below NAV (p < P): buy shares from the pool with asset, redeem them
through a Withdraw at NAV. Pool above NAV (p > P): mint shares through a
Deposit at NAV, sell them into the pool.

Trade size moves the pool price exactly to NAV (before rounding). With
reserves S (shares), A (asset), fee fraction f:

    below:  asset in   b = (P*S - A) / (1 + P*(1 - f) / p)
    above:  shares in  a = (A - P*S) / (P + p*(1 - f))

Both are capped by max_arbitrage_trade (asset units). Inside the no-trade
band, on a degenerate NAV, or when fees eat the whole spread, nothing
trades.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .config import VaultConfig
from .core import POOL_PARTY, VaultError, InvalidState
from .fixed_point import (
    ZERO, ONE, assets_for_shares, bps_to_fraction, quantize_amount, spread_bps,
)
from .pool import PoolState, compute_buy_shares, compute_rebalance, compute_sell_shares, quote_buy_shares, quote_sell_shares
from .workflows import compute_request_submission, deposit_offer, withdraw_request


class ArbitrageAction(Enum):
    NO_TRADE = "no_trade"
    BUY_AND_REDEEM = "buy_and_redeem"
    DEPOSIT_AND_SELL = "deposit_and_sell"


@dataclass(frozen=True, slots=True)
class ArbitrageDecision:
    """
    What the market maker would do against a pool snapshot.

    amount is asset in for BUY_AND_REDEEM, shares to sell for DEPOSIT_AND_SELL.
    """
    action: ArbitrageAction
    spread_bps: Decimal
    amount: Decimal = ZERO
    expected_profit: Decimal = ZERO
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ArbitrageTrade:
    action: ArbitrageAction
    asset_in: Decimal
    shares: Decimal
    asset_out: Decimal
    spread_before_bps: Decimal
    spread_after_bps: Decimal

    @property
    def profit(self) -> Decimal:
        return self.asset_out - self.asset_in


@dataclass
class ArbitrageResult:
    trades: List[ArbitrageTrade] = field(default_factory=list)
    iterations: int = 0
    final_spread_bps: Optional[Decimal] = None
    stopped_reason: Optional[str] = None

    @property
    def total_profit(self) -> Decimal:
        return sum((t.profit for t in self.trades), ZERO)


def _no_trade(spread: Decimal, reason: str) -> ArbitrageDecision:
    return ArbitrageDecision(ArbitrageAction.NO_TRADE, spread, reason=reason)


def decide(pool: PoolState, nav_price: Decimal, config: VaultConfig) -> ArbitrageDecision:
    """
    Size the trade that moves the pool price to nav_price.

    Pure; reads nothing but its arguments.
    """
    if nav_price <= 0:
        return _no_trade(ZERO, "share price is zero")
    price = pool.price
    spread = spread_bps(price, nav_price)
    if abs(spread) <= config.arbitrage_threshold_bps:
        return _no_trade(spread, "spread inside no-trade band")

    fee_keep = ONE - bps_to_fraction(pool.swap_fee_bps)
    S, A, P = pool.share_reserve, pool.asset_reserve, nav_price

    try:
        if spread < 0:
            asset_in = (P * S - A) / (ONE + P * fee_keep / price)
            asset_in = quantize_amount(min(asset_in, config.max_arbitrage_trade))
            if asset_in <= 0:
                return _no_trade(spread, "trade rounds to zero")
            quote = quote_buy_shares(pool, asset_in)
            profit = assets_for_shares(quote.amount_out, P) - asset_in
            action, amount = ArbitrageAction.BUY_AND_REDEEM, asset_in
        else:
            shares_in = (A - P * S) / (P + price * fee_keep)
            shares_in = quantize_amount(min(shares_in, config.max_arbitrage_trade / P))
            if shares_in <= 0:
                return _no_trade(spread, "trade rounds to zero")
            quote = quote_sell_shares(pool, shares_in)
            profit = quote.amount_out - assets_for_shares(shares_in, P)
            action, amount = ArbitrageAction.DEPOSIT_AND_SELL, shares_in
    except VaultError as exc:
        return _no_trade(spread, f"pool cannot absorb trade: {exc}")

    if profit <= 0:
        return _no_trade(spread, "fees exceed spread")
    return ArbitrageDecision(action, spread, amount, profit)


class MarketMaker:
    """
    Executes arbitrage decisions as a trader party.

    The below-NAV leg swaps then redeems through the settlement coordinator;
    the above-NAV leg deposits through the coordinator then swaps. The two
    legs are separate commits: between them the trader simply holds shares.

    Example:
        maker = MarketMaker(ledger, coordinator, config, trader="arb")
        result = maker.run()
    """

    def __init__(self, ledger, coordinator, config: Optional[VaultConfig] = None, trader: str = "arbitrageur"):
        self.ledger = ledger
        self.coordinator = coordinator
        self.config = config or coordinator.config
        self.trader = trader
        self.verbose = ledger.verbose

    def current_decision(self) -> ArbitrageDecision:
        vault = self.ledger.get_vault()
        pool = self.ledger.get_pool()
        if vault.paused:
            return _no_trade(spread_bps(pool.price, vault.share_price) if vault.share_price > 0 else ZERO,
                             "vault is paused")
        decision = decide(pool, vault.share_price, self.config)
        if decision.action is ArbitrageAction.BUY_AND_REDEEM:
            needed = decision.amount
        elif decision.action is ArbitrageAction.DEPOSIT_AND_SELL:
            needed = assets_for_shares(decision.amount, vault.share_price)
        else:
            return decision
        if self.ledger.get_asset_balance(self.trader) < needed:
            return _no_trade(decision.spread_bps, "trader holds too little asset")
        return decision

    def run_once(self) -> Optional[ArbitrageTrade]:
        """Execute at most one trade. Returns None on NO_TRADE."""
        with self.ledger.owner_lock(self.trader, POOL_PARTY):
            decision = self.current_decision()
            if decision.action is ArbitrageAction.NO_TRADE:
                if self.verbose:
                    print(f"· ARB no trade (spread {decision.spread_bps:.2f} bps): {decision.reason}")
                return None

            if decision.action is ArbitrageAction.BUY_AND_REDEEM:
                trade = self._buy_and_redeem(decision)
            else:
                trade = self._deposit_and_sell(decision)

            if self.config.auto_rebalance:
                self.ledger.execute(compute_rebalance(self.ledger, self.coordinator.operator))

        if self.verbose:
            print(
                f"✓ ARB {trade.action.value}: in={trade.asset_in} out={trade.asset_out} "
                f"profit={trade.profit} spread {trade.spread_before_bps:.2f} -> {trade.spread_after_bps:.2f} bps"
            )
        return trade

    def run(self, max_iterations: int = 10) -> ArbitrageResult:
        """Trade until NO_TRADE or max_iterations."""
        result = ArbitrageResult()
        while result.iterations < max_iterations:
            result.iterations += 1
            trade = self.run_once()
            if trade is None:
                result.stopped_reason = self.current_decision().reason
                break
            result.trades.append(trade)
        else:
            result.stopped_reason = "iteration limit"
        vault = self.ledger.get_vault()
        if vault.share_price > 0:
            result.final_spread_bps = spread_bps(self.ledger.get_pool().price, vault.share_price)
        return result

    def _spread_now(self) -> Decimal:
        return spread_bps(self.ledger.get_pool().price, self.ledger.get_vault().share_price)

    def _buy_and_redeem(self, decision: ArbitrageDecision) -> ArbitrageTrade:
        operator = self.coordinator.operator
        reference = f"arbitrage:{self.ledger.get_pool().version}"
        before = self.ledger.holdings_of(self.trader)
        self.ledger.execute(compute_buy_shares(self.ledger, self.trader, decision.amount))
        bought = sum((r.amount for r in self.ledger.holdings_of(self.trader)), ZERO) \
            - sum((r.amount for r in before), ZERO)
        if bought <= 0:
            raise InvalidState("arbitrage buy produced no shares")

        request = withdraw_request(self.trader, operator, bought, self.ledger.current_time, reference)
        self.ledger.execute(compute_request_submission(self.ledger, self.trader, request))
        receipt = self.coordinator.accept_withdraw(request.record_id)
        return ArbitrageTrade(
            action=decision.action,
            asset_in=decision.amount,
            shares=bought,
            asset_out=receipt.assets,
            spread_before_bps=decision.spread_bps,
            spread_after_bps=self._spread_now(),
        )

    def _deposit_and_sell(self, decision: ArbitrageDecision) -> ArbitrageTrade:
        operator = self.coordinator.operator
        reference = f"arbitrage:{self.ledger.get_pool().version}"
        price = self.ledger.get_vault().share_price
        deposit = assets_for_shares(decision.amount, price)
        request = deposit_offer(self.trader, operator, deposit, self.ledger.current_time, reference)
        self.ledger.execute(compute_request_submission(self.ledger, self.trader, request))
        receipt = self.coordinator.accept_deposit(request.record_id)

        balance_before = self.ledger.get_asset_balance(self.trader)
        self.ledger.execute(compute_sell_shares(self.ledger, self.trader, receipt.shares))
        proceeds = self.ledger.get_asset_balance(self.trader) - balance_before
        return ArbitrageTrade(
            action=decision.action,
            asset_in=deposit,
            shares=receipt.shares,
            asset_out=proceeds,
            spread_before_bps=decision.spread_bps,
            spread_after_bps=self._spread_now(),
        )
