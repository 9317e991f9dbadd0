"""
Conservation Law Conformance Tests

INVARIANT: For all tokens u, at all times t:
    Σ_{w ∈ wallets} balance(w, u, t) = 0

Every token is issued from the system wallet, so the signed sum over all
wallets stays zero however deposits, loans, repayments and liquidations
redistribute it. Alongside the ledger law, the protocol's own books must
agree with the balances they describe:

    vault(asset)          = Σ deposited_amount(account, asset)
    0 ≤ locked(account)   ≤ deposited(account)
    total_borrowed(market) = Σ principal(position) over open positions
    active_positions(market) = |open positions|

These tests drive random operation sequences through the protocol and
check every law after each step, whether the step applied or was rejected.
"""

from datetime import timedelta
from decimal import Decimal

from hypothesis import given, settings, note
from hypothesis import strategies as st

from lending import (
    AuthorizationContext, StaticPriceOracle, PositionStatus, COLLATERAL_VAULT, BPS,
    LedgerError,
)

from tests.conftest import Clock, build_protocol, make_ledger, make_roles, usdc_market


BORROWERS = ("alice", "bob")
OPEN = (PositionStatus.ACTIVE, PositionStatus.QUEUED)


# =============================================================================
# STRATEGIES FOR PROPERTY-BASED TESTING
# =============================================================================

def amounts(low: str, high: str, places: int = 2):
    return st.decimals(min_value=Decimal(low), max_value=Decimal(high), places=places,
                       allow_nan=False, allow_infinity=False)


@st.composite
def protocol_action(draw):
    """One user-level step: (kind, *arguments)."""
    kind = draw(st.sampled_from(
        ["deposit", "borrow", "increase", "repay", "add", "withdraw", "release",
         "advance", "price", "liquidate"]
    ))
    user = draw(st.sampled_from(BORROWERS))
    if kind == "deposit":
        return kind, user, draw(amounts("0.01", "4"))
    if kind == "borrow":
        return kind, user, draw(amounts("1", "3000")), draw(amounts("0.01", "3"))
    if kind in ("increase", "repay"):
        return kind, user, draw(amounts("1", "2000"))
    if kind in ("add", "withdraw", "release"):
        return kind, user, draw(amounts("0.01", "2"))
    if kind == "advance":
        return kind, draw(st.integers(min_value=1, max_value=120))
    if kind == "price":
        return kind, draw(st.integers(min_value=600, max_value=3000))
    return (kind,)


# =============================================================================
# HARNESS
# =============================================================================

class World:
    """A fresh funded protocol per hypothesis example."""

    def __init__(self):
        self.ledger = make_ledger()
        self.prices = StaticPriceOracle()
        self.clock = Clock(self.ledger, self.prices)
        roles = make_roles()
        self.ctx = lambda caller: AuthorizationContext(caller, roles)
        self.protocol = build_protocol(self.ledger, self.prices, self.ctx, usdc_market())

    def open_position(self, user):
        for position in self.protocol.get_user_positions(user):
            if position.status == PositionStatus.ACTIVE:
                return position.position_id
        return None

    def apply(self, action) -> None:
        kind, args = action[0], action[1:]
        protocol = self.protocol
        if kind == "advance":
            self.clock.advance(timedelta(days=args[0]))
            return
        if kind == "price":
            self.clock.set_price("ETH", args[0])
            return
        if kind == "liquidate":
            for position_id in protocol.find_liquidatable_positions():
                protocol.liquidate(self.ctx("keeper"), position_id)
            return

        user, amount = args[0], args[1]
        caller = self.ctx(user)
        if kind == "deposit":
            protocol.deposit(caller, "ETH", amount)
        elif kind == "borrow":
            protocol.create_position(caller, "USDC", "ETH", amount, args[2])
        elif kind == "withdraw":
            protocol.withdraw(caller, "ETH", amount)
        else:
            position_id = self.open_position(user)
            if position_id is None:
                return
            if kind == "increase":
                protocol.increase_borrow(caller, position_id, amount)
            elif kind == "repay":
                debt = protocol.get_outstanding_debt(position_id)
                protocol.repay(caller, position_id, min(amount, debt))
            elif kind == "add":
                protocol.add_collateral(caller, position_id, amount)
            elif kind == "release":
                protocol.withdraw_collateral(caller, position_id, amount)

    def check(self) -> None:
        ledger, protocol = self.ledger, self.protocol

        result = ledger.verify_double_entry({"USDC": Decimal("0"), "ETH": Decimal("0")})
        assert result["valid"], result["discrepancies"]

        deposited = Decimal("0")
        for user in ledger.list_wallets():
            account = protocol.get_account(user, "ETH")
            if account is None:
                continue
            assert Decimal("0") <= account.locked_amount <= account.deposited_amount
            deposited += account.deposited_amount
        assert ledger.get_balance(COLLATERAL_VAULT, "ETH") == deposited

        open_positions = [p for p in protocol.positions.list_positions() if p.status in OPEN]
        market = protocol.get_market_state("USDC")
        assert market.total_borrowed == sum((p.principal for p in open_positions), Decimal("0"))
        assert market.active_positions == len(open_positions)

        for position in open_positions:
            account = protocol.get_account(position.borrower, position.collateral_asset)
            assert account.locked_amount >= position.collateral_amount


# =============================================================================
# PROPERTY TESTS
# =============================================================================

class TestConservationProperties:
    """Property-based conservation tests."""

    @given(st.lists(protocol_action(), min_size=1, max_size=25))
    @settings(max_examples=40, deadline=None)
    def test_books_balance_after_every_step(self, actions):
        """
        PROPERTY: Every law holds after every step, applied or rejected.
        """
        world = World()
        world.check()
        for action in actions:
            note(repr(action))
            try:
                world.apply(action)
            except LedgerError as e:
                note(f"rejected: {e}")
            world.check()

    @given(amounts("1", "3000"), amounts("0.01", "3"))
    @settings(max_examples=50, deadline=None)
    def test_borrow_never_exceeds_max_ltv(self, borrow, collateral):
        """
        PROPERTY: A loan is opened iff its value is within max LTV of its collateral.
        """
        world = World()
        alice = world.ctx("alice")
        world.protocol.deposit(alice, "ETH", Decimal("3"))
        within = borrow * BPS <= Decimal("5000") * collateral * Decimal("2000")
        try:
            world.protocol.create_position(alice, "USDC", "ETH", borrow, collateral)
            opened = True
        except LedgerError:
            opened = False
        assert opened == within
        world.check()

    @given(st.lists(st.integers(min_value=1, max_value=90), min_size=1, max_size=8))
    @settings(max_examples=30, deadline=None)
    def test_debt_never_decreases_with_time(self, steps):
        """
        PROPERTY: Without repayment, outstanding debt is non-decreasing in time.
        """
        world = World()
        alice = world.ctx("alice")
        world.protocol.deposit(alice, "ETH", Decimal("2"))
        position_id = world.protocol.create_position(alice, "USDC", "ETH", Decimal("1500"), Decimal("2"))
        previous = world.protocol.get_outstanding_debt(position_id)
        for days in steps:
            world.clock.advance(timedelta(days=days))
            current = world.protocol.get_outstanding_debt(position_id)
            assert current >= previous
            previous = current


class TestConservationExamples:

    def test_full_lifecycle_conserves(self, protocol, ledger, clock, ctx):
        alice = ctx("alice")
        protocol.deposit(alice, "ETH", Decimal("2"))
        position_id = protocol.create_position(alice, "USDC", "ETH", Decimal("1500"), Decimal("2"))
        clock.advance(timedelta(days=45))
        clock.set_price("ETH", 1200)
        protocol.liquidate(ctx("keeper"), position_id)
        result = ledger.verify_double_entry({"USDC": Decimal("0"), "ETH": Decimal("0")})
        assert result["valid"]
        assert result["supplies"]["USDC"] == Decimal("0")
