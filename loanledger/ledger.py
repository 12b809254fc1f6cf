"""
ledger.py - Stateful Settlement Ledger

The Ledger class is the central state manager for the loan settlement system.
It is the only module that mutates state, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Implements AssetTransfer (balance_of / allowance / transfer_from) for tokens
    - Executes transactions atomically (moves, allowance use, unit creation,
      state changes and the event record all succeed or all fail)
    - Maintains wallet balances, allowances and unit definitions
    - Tracks logical time (integer epoch seconds, never moves backwards)
    - Always validates and always logs - no exceptions
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set, Tuple
import copy
import logging

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction, TransactionOrigin, OriginType,
    ExecuteResult, UnitState, BalanceMap, Positions, AllowanceKey,
    # Constants
    SYSTEM_WALLET, UNIT_TYPE_TOKEN,
    # Exceptions
    LedgerError, UnitNotRegistered, WalletNotRegistered, TransferRuleViolation,
    # Helper functions
    _freeze_state,
)
from .events import LoanEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[LoanEvent], None]


class Ledger:
    """
    Double-entry settlement ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    functions that access only read-only methods, and the AssetTransfer
    protocol, so agreements can pull pre-authorised funds.

    Design Principles:
        - Always validates: Every transaction is checked against registrations,
          transfer rules, balance bounds, allowances and stale unit state.
        - Always logs: Every applied transaction is recorded in the audit trail.
        - Nothing is observable until commit: events reach subscribers only
          after all effects of their transaction are in place.

    Thread Safety:
        Not thread-safe. Operations are serialised by the caller.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("USDT", "Tether USD"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")
        ledger.issue("USDT", "bob", 1_000)
        ledger.approve("bob", "alice", "USDT", 100)
        ledger.transfer_from("alice", "bob", "alice", "USDT", 100)
    """

    def __init__(
        self,
        name: str,
        initial_time: int = 0,
        verbose: bool = True,
        test_mode: bool = False,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting logical time in epoch seconds (default: 0)
            verbose: Print registrations and transactions (default: True)
            test_mode: Allow set_balance() calls (default: False)
        """
        if initial_time < 0:
            raise ValueError(f"initial_time cannot be negative, got {initial_time}")
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.allowances: Dict[AllowanceKey, int] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()  # For idempotency (content-based)
        self.transaction_log: List[Transaction] = []
        self.last_rejection: Optional[str] = None
        self._current_time: int = initial_time
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        self._subscribers: List[EventCallback] = []
        # Inverted index mapping unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, int]] = defaultdict(dict)

        # Auto-register the system wallet (used for issuance/redemption)
        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(int)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> int:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, 0)

    def get_allowance(self, owner: str, spender: str, unit_symbol: str) -> int:
        """Remaining amount `spender` may pull from `owner` (0 if never approved)."""
        return self.allowances.get((owner, spender, unit_symbol), 0)

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return copy.deepcopy(self.units[unit_symbol].state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """All non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def total_supply(self, unit_symbol: str) -> int:
        """
        Total quantity of a unit across all wallets, including SYSTEM_WALLET.

        Always zero for a closed system: issuance debits the system wallet.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(self.balances[w].get(unit_symbol, 0) for w in sorted(self.registered_wallets))

    def verify_double_entry(self) -> Dict[str, object]:
        """
        Verify that every token nets to zero across all wallets.

        Returns:
            Dict with 'valid' (bool), 'supplies' (unit -> total) and
            'discrepancies' (units whose total is not zero).
        """
        supplies = {}
        discrepancies = []
        for unit_symbol, unit in self.units.items():
            if unit.unit_type != UNIT_TYPE_TOKEN:
                continue
            total = self.total_supply(unit_symbol)
            supplies[unit_symbol] = total
            if total != 0:
                discrepancies.append({'unit': unit_symbol, 'actual': total})
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # AssetTransfer PROTOCOL IMPLEMENTATION
    # ========================================================================

    def balance_of(self, owner: str, asset: str) -> int:
        if owner not in self.registered_wallets:
            return 0
        return self.get_balance(owner, asset)

    def allowance(self, owner: str, spender: str, asset: str) -> int:
        return self.get_allowance(owner, spender, asset)

    def transfer_from(
        self,
        spender: str,
        source: str,
        dest: str,
        asset: str,
        amount: int,
    ) -> bool:
        """
        Pull `amount` of `asset` from source to dest on spender's authority.

        Executed as its own one-move transaction. Returns False (and leaves
        everything unchanged) if the balance or allowance is short.
        """
        pending = PendingTransaction(
            moves=(Move(
                amount, asset, source, dest,
                f"transfer_from:{spender}:{self._next_sequence}", spender=spender,
            ),),
            state_changes=(),
            origin=TransactionOrigin(OriginType.EXTERNAL, spender, asset, "TRANSFER_FROM"),
            timestamp=self._current_time,
        )
        return self.execute(pending) != ExecuteResult.REJECTED

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: int) -> None:
        """
        Advance the ledger's logical clock.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(int)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        logger.debug("registered unit %s [%s]", unit.symbol, unit.unit_type)
        if self.verbose:
            rule_str = f", rule={unit.transfer_rule.__name__}" if unit.transfer_rule else ""
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]{rule_str}")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: bypasses double-entry accounting and is only available in
        test mode. Use issue() or execute() otherwise.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use issue() or execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        self.balances[wallet_id][unit_symbol] = int(quantity)
        self._update_position_index(wallet_id, unit_symbol, int(quantity))

    def issue(self, asset: str, dest: str, amount: int) -> ExecuteResult:
        """
        Mint `amount` of a token into `dest` from SYSTEM_WALLET.

        Issuance is an ordinary logged transaction, so total_supply stays zero.
        """
        pending = PendingTransaction(
            moves=(Move(amount, asset, SYSTEM_WALLET, dest, f"issue:{asset}:{self._next_sequence}"),),
            state_changes=(),
            origin=TransactionOrigin(OriginType.SYSTEM, "issuer", asset, "ISSUE"),
            timestamp=self._current_time,
        )
        return self.execute(pending)

    def approve(self, owner: str, spender: str, asset: str, amount: int) -> None:
        """
        Authorise `spender` to pull up to `amount` of `asset` from `owner`.

        Overwrites any previous allowance for the same pair.

        Raises:
            WalletNotRegistered: If owner is not registered
            UnitNotRegistered: If asset is not registered
            ValueError: If amount is negative
        """
        if owner not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {owner} not registered")
        if asset not in self.units:
            raise UnitNotRegistered(f"Unit {asset} not registered")
        if amount < 0:
            raise ValueError(f"allowance cannot be negative, got {amount}")
        self.allowances[(owner, spender, asset)] = amount
        logger.debug("approve %s -> %s: %d %s", owner, spender, amount, asset)

    def subscribe(self, callback: EventCallback) -> None:
        """
        Register an observer for committed events.

        Callbacks run after commit, in registration order. An exception raised
        by a callback is logged and does not change the execute() result.
        """
        self._subscribers.append(callback)

    def events(self, kind: Optional[str] = None, loan: Optional[str] = None) -> List[LoanEvent]:
        """All committed events in execution order, optionally filtered."""
        result = []
        for tx in self.transaction_log:
            for event in tx.events:
                if kind is not None and event.kind != kind:
                    continue
                if loan is not None and event.loan != loan:
                    continue
                result.append(event)
        return result

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp}
        """
        return f"exec:{self.name}:{sequence:012d}:{self._current_time}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Every check runs before the first mutation, so a rejected
        transaction leaves balances, allowances, units, the log and the
        event stream exactly as they were. Execution is idempotent: a
        pending transaction with the same intent_id is not applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed (reason in last_rejection)
        """
        self.last_rejection = None

        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"⚠️  ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        valid, reason = self._validate_pending(pending)
        if not valid:
            self.last_rejection = reason
            logger.info("rejected %s: %s", pending.origin, reason)
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
            events=pending.events,
        )

        for unit in tx.units_to_create:
            self.register_unit(unit)

        self._execute_moves(tx.moves)

        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)
        logger.debug("applied %s (%d moves, %d events)", tx.exec_id, len(tx.moves), len(tx.events))

        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")

        # Already committed: subscriber failures are logged, not raised.
        for event in tx.events:
            for callback in self._subscribers:
                try:
                    callback(event)
                except Exception:
                    logger.exception("subscriber %r failed on %s (%s)", callback, event.kind, tx.exec_id)

        return ExecuteResult.APPLIED

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print transaction details (Transaction.__repr__) with a result line."""
        lines = repr(tx).split('\n')
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines[-1] = f"├{bar}┤"
        lines.append(f"│{pad(' ' + icon + ' ' + result)}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp (transaction must not be from the future)
        2. Units to create are not already registered
        3. Unit and wallet registration for every move
        4. Transfer rules
        5. Allowances for pull moves
        6. Balance bounds after netting all moves
        7. State changes target known units and were built from current state

        Returns:
            Tuple of (success, reason); reason is empty on success.
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        created = {}
        for unit in pending.units_to_create:
            if unit.symbol in self.units or unit.symbol in created:
                return False, f"unit already registered: {unit.symbol}"
            created[unit.symbol] = unit

        for move in pending.moves:
            unit = self.units.get(move.unit_symbol) or created.get(move.unit_symbol)
            if unit is None:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return False, str(e)

        pulled: Dict[AllowanceKey, int] = defaultdict(int)
        for move in pending.moves:
            if move.spender is not None:
                pulled[(move.source, move.spender, move.unit_symbol)] += move.quantity
        for key, total in pulled.items():
            available = self.allowances.get(key, 0)
            if total > available:
                owner, spender, unit_sym = key
                return False, (
                    f"insufficient allowance: {spender} may pull {available} {unit_sym} "
                    f"from {owner}, needs {total}"
                )

        net: Dict[Tuple[str, str], int] = defaultdict(int)
        for move in pending.moves:
            net[(move.source, move.unit_symbol)] -= move.quantity
            net[(move.dest, move.unit_symbol)] += move.quantity

        # SYSTEM_WALLET is exempt from balance validation
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units.get(unit_sym) or created[unit_sym]
            proposed = self.balances[wallet].get(unit_sym, 0) + delta
            if proposed < unit.min_balance:
                return False, f"insufficient balance: {wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if unit.max_balance is not None and proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        seen_units: Set[str] = set()
        for sc in pending.state_changes:
            if sc.unit in seen_units:
                return False, f"multiple state changes for {sc.unit}"
            seen_units.add(sc.unit)
            if sc.unit not in self.units:
                return False, f"state change for unregistered unit: {sc.unit}"
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                return False, f"stale state for {sc.unit}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """Keep the unit -> {wallet -> quantity} index in sync; zero balances are dropped."""
        if quantity != 0:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """
        Apply all moves to wallet balances.

        For each move: debit source, credit dest, consume the spender's
        allowance for pull moves, update the position index.
        """
        for move in moves:
            new_src_balance = self.balances[move.source][move.unit_symbol] - move.quantity
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)

            new_dst_balance = self.balances[move.dest][move.unit_symbol] + move.quantity
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

            if move.spender is not None:
                key = (move.source, move.spender, move.unit_symbol)
                self.allowances[key] = self.allowances.get(key, 0) - move.quantity

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a deep copy of this ledger.

        All state is fully independent: modifications to the clone will not
        affect the original ledger, and vice versa. Subscribers are not copied.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned._subscribers = []
        cloned.last_rejection = None

        cloned.units = {}
        for symbol, unit in self.units.items():
            cloned.units[symbol] = replace(
                unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state))
            )

        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence
        cloned.allowances = dict(self.allowances)

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(int, bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned
