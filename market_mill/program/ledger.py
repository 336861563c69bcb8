"""Account ledger with per-invocation atomicity and account locking.

Every entry point runs inside ``Ledger.invoke()``:
  1. lock the declared accounts (writable = exclusive, readonly = shared),
  2. snapshot the writable accounts,
  3. run the handler against the live accounts,
  4. on success publish staged events; on any exception restore every
     snapshot and drop accounts created during the invocation.

A lock conflict fails immediately with AccountInUseError. The caller retries
with a new invocation; nothing waits inside the ledger.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    AccountAlreadyExistsError,
    AccountInUseError,
    AccountNotFoundError,
    InsufficientFundsError,
    MissingSignatureError,
    ReadonlyAccountError,
)
from market_mill.program.state import checked_add

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

T = TypeVar("T")


@dataclass
class LedgerAccount:
    owner: Pubkey
    lamports: int = 0
    state: Any = None
    executable: bool = False

    def clone(self) -> LedgerAccount:
        return LedgerAccount(
            owner=self.owner,
            lamports=self.lamports,
            state=copy.deepcopy(self.state),
            executable=self.executable,
        )


@dataclass
class Invocation:
    """One atomic unit of work against the ledger."""

    ledger: Ledger
    id: int
    writable: frozenset[Pubkey]
    readonly: frozenset[Pubkey]
    signers: frozenset[Pubkey]
    events: list[object] = field(default_factory=list)
    _snapshots: dict[Pubkey, LedgerAccount | None] = field(default_factory=dict)

    # ── reads ──

    def exists(self, key: Pubkey) -> bool:
        return key in self.ledger._accounts

    def account(self, key: Pubkey) -> LedgerAccount:
        acct = self.ledger._accounts.get(key)
        if acct is None:
            raise AccountNotFoundError(f"Account {key} does not exist")
        return acct

    def state(self, key: Pubkey, kind: type[T]) -> T:
        st = self.account(key).state
        if not isinstance(st, kind):
            raise AccountNotFoundError(f"Account {key} does not hold {kind.__name__}")
        return st

    def balance(self, key: Pubkey) -> int:
        acct = self.ledger._accounts.get(key)
        return acct.lamports if acct else 0

    def is_signer(self, key: Pubkey) -> bool:
        return key in self.signers

    def require_signer(self, key: Pubkey) -> None:
        if key not in self.signers:
            raise MissingSignatureError(f"Missing signature for {key}")

    # ── writes ──

    def _check_writable(self, key: Pubkey) -> None:
        if key not in self.writable:
            raise ReadonlyAccountError(f"Account {key} is not writable in this invocation")

    def state_mut(self, key: Pubkey, kind: type[T]) -> T:
        self._check_writable(key)
        return self.state(key, kind)

    def create(
        self, key: Pubkey, *, owner: Pubkey, state: Any = None, lamports: int = 0
    ) -> LedgerAccount:
        self._check_writable(key)
        if key in self.ledger._accounts:
            raise AccountAlreadyExistsError(f"Account {key} already exists")
        acct = LedgerAccount(owner=owner, lamports=lamports, state=state)
        self.ledger._accounts[key] = acct
        return acct

    def transfer(self, source: Pubkey, dest: Pubkey, amount: int) -> None:
        """Move lamports. Missing destinations become system accounts."""
        if amount == 0:
            return
        self._check_writable(source)
        self._check_writable(dest)
        src = self.account(source)
        if src.lamports < amount:
            raise InsufficientFundsError(f"Insufficient funds in {source}: {src.lamports} < {amount}")
        dst = self.ledger._accounts.get(dest)
        if dst is None:
            dst = LedgerAccount(owner=SYSTEM_PROGRAM_ID)
            self.ledger._accounts[dest] = dst
        src.lamports -= amount
        dst.lamports = checked_add(dst.lamports, amount)

    def emit(self, event: object) -> None:
        self.events.append(event)

    # ── lifecycle ──

    def _snapshot(self) -> None:
        accounts = self.ledger._accounts
        for key in self.writable:
            acct = accounts.get(key)
            self._snapshots[key] = acct.clone() if acct is not None else None

    def _rollback(self) -> None:
        accounts = self.ledger._accounts
        for key, snap in self._snapshots.items():
            if snap is None:
                accounts.pop(key, None)
            else:
                accounts[key] = snap
        self.events.clear()


class Ledger:
    """In-process account store shared by every program registered with the runtime."""

    def __init__(self) -> None:
        self._accounts: dict[Pubkey, LedgerAccount] = {}
        self._write_locks: dict[Pubkey, int] = {}
        self._read_locks: dict[Pubkey, set[int]] = {}
        self._lock_table_guard = threading.Lock()
        self._ids = itertools.count(1)
        self.events: list[object] = []

    # ── setup / inspection outside an invocation ──

    def fund(self, key: Pubkey, lamports: int, *, owner: Pubkey = SYSTEM_PROGRAM_ID) -> None:
        acct = self._accounts.get(key)
        if acct is None:
            self._accounts[key] = LedgerAccount(owner=owner, lamports=lamports)
        else:
            acct.lamports = checked_add(acct.lamports, lamports)

    def add_program(self, program_id: Pubkey) -> None:
        self._accounts.setdefault(
            program_id, LedgerAccount(owner=SYSTEM_PROGRAM_ID, executable=True)
        )

    def get(self, key: Pubkey) -> LedgerAccount | None:
        return self._accounts.get(key)

    def exists(self, key: Pubkey) -> bool:
        return key in self._accounts

    def balance(self, key: Pubkey) -> int:
        acct = self._accounts.get(key)
        return acct.lamports if acct else 0

    def state(self, key: Pubkey) -> Any:
        acct = self._accounts.get(key)
        return acct.state if acct else None

    # ── invocations ──

    @contextmanager
    def invoke(
        self,
        *,
        writable: Iterable[Pubkey],
        readonly: Iterable[Pubkey] = (),
        signers: Iterable[Pubkey] = (),
    ) -> Iterator[Invocation]:
        writable_set = frozenset(writable)
        inv = Invocation(
            ledger=self,
            id=next(self._ids),
            writable=writable_set,
            readonly=frozenset(readonly) - writable_set,
            signers=frozenset(signers),
        )
        self._acquire(inv)
        try:
            inv._snapshot()
            yield inv
        except BaseException as e:
            inv._rollback()
            logger.debug(f"[LEDGER] Invocation #{inv.id} rolled back: {type(e).__name__}: {e}")
            raise
        else:
            self.events.extend(inv.events)
        finally:
            self._release(inv)

    def _acquire(self, inv: Invocation) -> None:
        with self._lock_table_guard:
            for key in inv.writable:
                if key in self._write_locks or self._read_locks.get(key):
                    raise AccountInUseError(f"Account {key} is locked by another invocation")
            for key in inv.readonly:
                if key in self._write_locks:
                    raise AccountInUseError(f"Account {key} is write-locked by another invocation")
            for key in inv.writable:
                self._write_locks[key] = inv.id
            for key in inv.readonly:
                self._read_locks.setdefault(key, set()).add(inv.id)

    def _release(self, inv: Invocation) -> None:
        with self._lock_table_guard:
            for key in inv.writable:
                if self._write_locks.get(key) == inv.id:
                    del self._write_locks[key]
            for key in inv.readonly:
                holders = self._read_locks.get(key)
                if holders is not None:
                    holders.discard(inv.id)
                    if not holders:
                        del self._read_locks[key]
