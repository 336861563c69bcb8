"""Program registry and signed cross-program invocation.

External programs (an AMM, a token program) are plain objects with a
``process(ctx, data)`` method, registered under their program id. The runtime
is the only place that turns signer seeds into signatures: a derived address
signs a forwarded call only when the calling program proves the seeds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from loguru import logger
from solders.instruction import AccountMeta, Instruction  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    AccountOwnerMismatchError,
    MissingSignatureError,
    ProgramNotFoundError,
    ReadonlyAccountError,
)
from market_mill.program.ledger import Invocation, Ledger, LedgerAccount
from market_mill.program.pda import signer_from_seeds

T = TypeVar("T")


class ExternalProgram(Protocol):
    def process(self, ctx: CpiContext, data: bytes) -> None: ...


@dataclass
class CpiContext:
    """What a called program sees: its id, its account metas and the effective signers."""

    program_id: Pubkey
    accounts: list[AccountMeta]
    invocation: Invocation
    signers: frozenset[Pubkey]

    def _meta(self, key: Pubkey) -> AccountMeta | None:
        for meta in self.accounts:
            if meta.pubkey == key:
                return meta
        return None

    def is_signer(self, key: Pubkey) -> bool:
        meta = self._meta(key)
        return meta is not None and meta.is_signer and key in self.signers

    def require_signer(self, key: Pubkey) -> None:
        if not self.is_signer(key):
            raise MissingSignatureError(f"{key} did not sign the call to {self.program_id}")

    def _check_writable(self, key: Pubkey) -> None:
        meta = self._meta(key)
        if meta is None or not meta.is_writable:
            raise ReadonlyAccountError(f"{key} is not writable for {self.program_id}")

    def state(self, key: Pubkey, kind: type[T]) -> T:
        return self.invocation.state(key, kind)

    def _check_owned(self, key: Pubkey) -> None:
        owner = self.invocation.account(key).owner
        if owner != self.program_id:
            raise AccountOwnerMismatchError(
                f"{key} is owned by {owner}; {self.program_id} may not modify it"
            )

    def state_mut(self, key: Pubkey, kind: type[T]) -> T:
        self._check_writable(key)
        self._check_owned(key)
        return self.invocation.state_mut(key, kind)

    def exists(self, key: Pubkey) -> bool:
        return self.invocation.exists(key)

    def create(self, key: Pubkey, *, state: Any = None, lamports: int = 0) -> LedgerAccount:
        """Create a new account owned by this program. Existing keys are rejected."""
        self._check_writable(key)
        return self.invocation.create(key, owner=self.program_id, state=state, lamports=lamports)

    def transfer(self, source: Pubkey, dest: Pubkey, amount: int) -> None:
        """Debit source, which this program must own or which must have signed the call."""
        self._check_writable(source)
        self._check_writable(dest)
        if self.invocation.account(source).owner != self.program_id and not self.is_signer(source):
            raise MissingSignatureError(
                f"{self.program_id} may not debit {source}: not its owner and not a signer"
            )
        self.invocation.transfer(source, dest, amount)


class Runtime:
    def __init__(self, ledger: Ledger) -> None:
        self.ledger = ledger
        self._programs: dict[Pubkey, ExternalProgram] = {}

    def register(self, program_id: Pubkey, program: ExternalProgram) -> None:
        self._programs[program_id] = program
        self.ledger.add_program(program_id)
        logger.debug(f"[RUNTIME] Registered program {program_id}")

    def is_registered(self, program_id: Pubkey) -> bool:
        return program_id in self._programs

    def invoke_signed(
        self,
        invocation: Invocation,
        instruction: Instruction,
        *,
        caller_program_id: Pubkey,
        signer_seeds: list[list[bytes]],
    ) -> None:
        """Run instruction inside the caller's invocation.

        Signer privileges come from the transaction signers plus every address
        derived from signer_seeds under caller_program_id. Writable privileges
        cannot exceed what the outer invocation locked.
        """
        program = self._programs.get(instruction.program_id)
        if program is None:
            raise ProgramNotFoundError(f"Program {instruction.program_id} is not deployed")

        derived = {signer_from_seeds(seeds, caller_program_id) for seeds in signer_seeds}
        signers = invocation.signers | derived

        for meta in instruction.accounts:
            if meta.is_signer and meta.pubkey not in signers:
                raise MissingSignatureError(
                    f"Account {meta.pubkey} is marked signer but no signature or seeds were provided"
                )
            if meta.is_writable and meta.pubkey not in invocation.writable:
                raise ReadonlyAccountError(
                    f"Account {meta.pubkey} is writable in the call but not in the invocation"
                )

        ctx = CpiContext(
            program_id=instruction.program_id,
            accounts=list(instruction.accounts),
            invocation=invocation,
            signers=frozenset(signers),
        )
        program.process(ctx, bytes(instruction.data))
