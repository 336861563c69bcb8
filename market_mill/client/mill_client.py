"""Market mill RPC client: build, sign, send and confirm mill instructions.

Pipeline for every submission:
  1. Build the mill instruction (marshalled external payloads ride along)
  2. Fetch a fresh blockhash from our RPC
  3. Compile MessageV0, sign with the caller keypair
  4. sendTransaction
  5. Poll getSignatureStatuses with resend until confirmed or timeout
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass

import httpx
from loguru import logger
from solders.hash import Hash  # type: ignore[import-untyped]
from solders.instruction import Instruction  # type: ignore[import-untyped]
from solders.keypair import Keypair  # type: ignore[import-untyped]
from solders.message import MessageV0  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]
from solders.transaction import VersionedTransaction  # type: ignore[import-untyped]

from config.settings import settings
from market_mill.client.instructions import (
    build_perform_buyback_ix,
    build_perform_migration_ix,
)
from market_mill.codec import decode_market
from market_mill.program.buyback import PerformBuybackAccounts
from market_mill.program.forwarder import ForwardPayload
from market_mill.program.migration import PerformMigrationAccounts
from market_mill.program.state import Market

RETRY_DELAYS = [1.0, 3.0]


def _rpc_request(method: str, params: list) -> dict:
    return {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}


def _retry_delay(attempt: int) -> float:
    return RETRY_DELAYS[min(attempt, len(RETRY_DELAYS) - 1)]


@dataclass
class SendResult:
    """Result of a transaction submission attempt."""

    success: bool
    tx_hash: str | None = None
    error: str | None = None
    is_retryable: bool = False


class MarketMillClient:
    """Submits market mill instructions to a Solana cluster."""

    def __init__(
        self,
        *,
        rpc_url: str,
        keypair: Keypair,
        program_id: Pubkey,
        timeout: float | None = None,
        confirm_timeout: float | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._keypair = keypair
        self._program_id = program_id
        self._rpc_http = httpx.AsyncClient(timeout=timeout or settings.rpc_timeout_sec)
        self._confirm_timeout = confirm_timeout or settings.confirm_timeout_sec
        self._poll_interval = settings.confirm_poll_interval_sec
        self._resend_interval = settings.resend_interval_sec
        self._max_retries = settings.max_send_retries

    @property
    def program_id(self) -> Pubkey:
        return self._program_id

    # ─── Entry points ────────────────────────────────────────────────

    async def perform_migration(
        self,
        accounts: PerformMigrationAccounts,
        create_lp: ForwardPayload,
        burn_lp: ForwardPayload | None = None,
        *,
        force: bool = False,
    ) -> SendResult:
        ix = build_perform_migration_ix(
            self._program_id, accounts, create_lp=create_lp, burn_lp=burn_lp, force=force
        )
        logger.info(
            f"[RPC] perform_migration market={str(accounts.market)[:12]} "
            f"force={force} forwarded={1 + (burn_lp is not None)} "
            f"remaining={len(create_lp.accounts)}"
        )
        return await self.send_instructions([ix])

    async def perform_buyback(
        self,
        accounts: PerformBuybackAccounts,
        lamports: int,
        swap: ForwardPayload | None = None,
    ) -> SendResult:
        ix = build_perform_buyback_ix(self._program_id, accounts, lamports=lamports, swap=swap)
        logger.info(f"[RPC] perform_buyback market={str(accounts.market)[:12]} lamports={lamports}")
        return await self.send_instructions([ix])

    async def fetch_market(self, market: Pubkey) -> Market | None:
        """Fetch and decode a market account. None if it does not exist."""
        raw = await self._get_account_data(market)
        if raw is None:
            return None
        return decode_market(raw)

    # ─── TX pipeline ─────────────────────────────────────────────────

    async def send_instructions(self, instructions: list[Instruction]) -> SendResult:
        try:
            tx_b64, tx_sig = await self._build_and_sign_tx(instructions)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            return SendResult(success=False, error=f"TX build/sign failed: {e}", is_retryable=True)

        sent_hash = await self._send_raw_transaction(tx_b64)
        if sent_hash is None:
            return SendResult(
                success=False, tx_hash=tx_sig, error="sendTransaction RPC failed", is_retryable=True
            )

        confirmed, err = await self._wait_for_confirmation_with_resend(sent_hash, tx_b64)
        if err is not None:
            return SendResult(success=False, tx_hash=sent_hash, error=f"TX failed on-chain: {err}")
        if not confirmed:
            return SendResult(
                success=False,
                tx_hash=sent_hash,
                error=f"Confirmation timeout ({self._confirm_timeout}s)",
            )

        logger.info(f"[RPC] TX confirmed: {sent_hash}")
        return SendResult(success=True, tx_hash=sent_hash)

    async def _build_and_sign_tx(self, instructions: list[Instruction]) -> tuple[str, str]:
        """Returns (tx_base64, tx_signature_string)."""
        blockhash = await self._get_latest_blockhash()
        msg = MessageV0.try_compile(
            payer=self._keypair.pubkey(),
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )
        tx = VersionedTransaction(msg, [self._keypair])
        tx_b64 = base64.b64encode(bytes(tx)).decode("ascii")
        tx_sig = str(tx.signatures[0])
        logger.debug(
            f"[RPC] TX built: {len(instructions)} instructions, blockhash={str(blockhash)[:16]}..."
        )
        return tx_b64, tx_sig

    # ─── RPC methods ─────────────────────────────────────────────────

    async def _rpc(self, method: str, params: list) -> dict:
        resp = await self._rpc_http.post(self._rpc_url, json=_rpc_request(method, params))
        resp.raise_for_status()
        return resp.json()

    async def _get_latest_blockhash(self) -> Hash:
        data = await self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        return Hash.from_string(data["result"]["value"]["blockhash"])

    async def _get_account_data(self, key: Pubkey) -> bytes | None:
        data = await self._rpc(
            "getAccountInfo", [str(key), {"encoding": "base64", "commitment": "confirmed"}]
        )
        if "error" in data:
            logger.warning(f"[RPC] getAccountInfo error for {str(key)[:12]}: {data['error']}")
            return None
        value = data.get("result", {}).get("value")
        if not value:
            return None
        return base64.b64decode(value["data"][0])

    async def _send_raw_transaction(self, tx_b64: str) -> str | None:
        params = [tx_b64, {"encoding": "base64", "skipPreflight": False, "maxRetries": 5}]
        for attempt in range(self._max_retries + 1):
            if attempt:
                await asyncio.sleep(_retry_delay(attempt - 1))
            try:
                data = await self._rpc("sendTransaction", params)
            except (httpx.TimeoutException, httpx.ConnectError, httpx.HTTPStatusError) as e:
                logger.debug(f"[RPC] sendTransaction attempt {attempt + 1} failed: {e}")
                continue

            error = data.get("error")
            if error is None:
                result = data.get("result")
                return str(result) if result else None
            msg = error.get("message", str(error))
            logger.warning(f"[RPC] sendTransaction error {error.get('code', '?')}: {msg}")
            # Mill errors surface in preflight and will not change on retry
            if "Blockhash not found" in msg or "simulation failed" in msg.lower():
                return None

        logger.warning(f"[RPC] sendTransaction gave up after {self._max_retries + 1} attempts")
        return None

    async def _wait_for_confirmation_with_resend(
        self, tx_hash: str, tx_b64: str
    ) -> tuple[bool, object | None]:
        """Poll getSignatureStatuses, re-sending the same signed TX periodically.

        Returns (confirmed, on-chain error or None).
        """
        status_payload = _rpc_request(
            "getSignatureStatuses", [[tx_hash], {"searchTransactionHistory": True}]
        )
        # Same signature, so re-sending is idempotent
        send_payload = _rpc_request(
            "sendTransaction", [tx_b64, {"encoding": "base64", "skipPreflight": True, "maxRetries": 0}]
        )

        elapsed = 0.0
        last_resend = 0.0
        while elapsed < self._confirm_timeout:
            try:
                resp = await self._rpc_http.post(self._rpc_url, json=status_payload)
                if resp.status_code == 200:
                    statuses = resp.json().get("result", {}).get("value", [])
                    if statuses and statuses[0] is not None:
                        status = statuses[0]
                        err = status.get("err")
                        if err:
                            logger.warning(f"[RPC] TX {tx_hash[:16]} error on-chain: {err}")
                            return False, err
                        if status.get("confirmationStatus") in ("confirmed", "finalized"):
                            logger.debug(f"[RPC] TX {tx_hash[:16]} confirmed in {elapsed:.1f}s")
                            return True, None
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                logger.debug(f"[RPC] Status poll {type(e).__name__}, will retry")

            if elapsed - last_resend >= self._resend_interval:
                try:
                    await self._rpc_http.post(self._rpc_url, json=send_payload)
                    last_resend = elapsed
                except (httpx.TimeoutException, httpx.ConnectError) as e:
                    logger.debug(f"[RPC] Resend failed: {e}")

            await asyncio.sleep(self._poll_interval)
            elapsed += self._poll_interval

        logger.warning(f"[RPC] TX {tx_hash[:16]} confirmation timeout after {self._confirm_timeout}s")
        return False, None

    async def close(self) -> None:
        await self._rpc_http.aclose()
