"""Account descriptor translator.

The forwarded call sees exactly the accounts the third-party builder asked
for: same addresses, same signer/writable flags, same order. Nothing is
deduplicated against the mill's own fixed accounts; the runtime merges
privileges when the transaction is compiled.
"""

from __future__ import annotations

from collections.abc import Iterable

from solders.instruction import AccountMeta  # type: ignore[import-untyped]

from market_mill.program.forwarder import ForwardPayload


def to_remaining_accounts(metas: Iterable[AccountMeta] | ForwardPayload) -> list[AccountMeta]:
    if isinstance(metas, ForwardPayload):
        metas = metas.accounts
    return [AccountMeta(m.pubkey, m.is_signer, m.is_writable) for m in metas]


def remaining_accounts_to_json(metas: Iterable[AccountMeta]) -> list[dict]:
    return [
        {"pubkey": str(m.pubkey), "isSigner": m.is_signer, "isWritable": m.is_writable}
        for m in metas
    ]
