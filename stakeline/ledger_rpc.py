"""
Ledger RPC surface used by the submission pipeline.

Every call goes through the ConnectionPool, so transient endpoint failures
are absorbed by fallback and backoff. Reads use each connection's own
commitment level.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from stakeline.connection_pool import ConnectionPool
from stakeline.deadline import Deadline
from stakeline.errors import StakelineError, TransientNetworkError, is_network_error

logger = logging.getLogger(__name__)

_STATUS_ORDER = (
    TransactionConfirmationStatus.Processed,
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)
_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


@dataclass
class SimulationReport:
    err: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.err is None


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class Confirmation:
    outcome: ConfirmationOutcome
    error: Optional[str] = None
    slot: Optional[int] = None


def _value(resp: Any, method: str) -> Any:
    """Unwrap ``resp.value``; JSON-RPC error payloads carry no value."""
    try:
        return resp.value
    except AttributeError:
        message = getattr(resp, "message", None) or str(resp)
        text = f"{method} returned an error: {message}"
        if is_network_error(Exception(message)):
            raise TransientNetworkError(text) from None
        raise StakelineError(text, {"method": method}) from None


def meets_commitment(status: Optional[TransactionConfirmationStatus], commitment: str) -> bool:
    # Nodes that omit confirmation_status report at least "processed".
    # Status members are unhashable; rank by equality.
    rank = 0
    if status is not None:
        rank = next((i for i, member in enumerate(_STATUS_ORDER) if status == member), 0)
    return rank >= _COMMITMENT_RANK.get(commitment, 1)


class LedgerRpc:
    """Thin async facade over the pool for the calls a submission needs."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        commitment: str = "confirmed",
        poll_interval: float = 0.5,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.pool = pool
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._sleep = sleep or asyncio.sleep

    async def get_latest_blockhash(self) -> BlockhashInfo:
        async def op(client):
            value = _value(await client.get_latest_blockhash(), "getLatestBlockhash")
            return BlockhashInfo(value.blockhash, value.last_valid_block_height)

        return await self.pool.execute(op, label="getLatestBlockhash")

    async def get_block_height(self) -> int:
        async def op(client):
            return _value(await client.get_block_height(), "getBlockHeight")

        return await self.pool.execute(op, label="getBlockHeight")

    async def get_balance(self, address: Pubkey) -> int:
        async def op(client):
            return _value(await client.get_balance(address), "getBalance")

        return await self.pool.execute(op, label="getBalance")

    async def get_account_info(self, address: Pubkey) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        async def op(client):
            account = _value(await client.get_account_info(address), "getAccountInfo")
            return None if account is None else bytes(account.data)

        return await self.pool.execute(op, label="getAccountInfo")

    async def get_token_balance(self, token_account: Pubkey) -> int:
        """Raw token amount held by ``token_account``."""
        async def op(client):
            value = _value(await client.get_token_account_balance(token_account), "getTokenAccountBalance")
            return int(value.amount)

        return await self.pool.execute(op, label="getTokenAccountBalance")

    async def simulate(self, transaction) -> SimulationReport:
        async def op(client):
            value = _value(
                await client.simulate_transaction(transaction, sig_verify=False),
                "simulateTransaction",
            )
            return SimulationReport(
                err=str(value.err) if value.err is not None else None,
                logs=list(value.logs or []),
                units_consumed=value.units_consumed,
            )

        return await self.pool.execute(op, label="simulateTransaction")

    async def send_raw(self, transaction, *, skip_preflight: bool = True) -> Signature:
        """Broadcast signed bytes. Resending identical bytes cannot double-execute."""
        payload = bytes(transaction)
        opts = TxOpts(skip_preflight=skip_preflight, preflight_commitment=self.commitment)

        async def op(client):
            return _value(await client.send_raw_transaction(payload, opts=opts), "sendTransaction")

        return await self.pool.execute(op, label="sendTransaction")

    async def get_signature_status(self, signature: Signature):
        async def op(client):
            statuses = _value(await client.get_signature_statuses([signature]), "getSignatureStatuses")
            return statuses[0] if statuses else None

        return await self.pool.execute(op, label="getSignatureStatuses")

    async def confirm(
        self,
        signature: Signature,
        expiry_height: int,
        deadline: Optional[Deadline] = None,
    ) -> Confirmation:
        """
        Poll until ``signature`` reaches the pipeline commitment, fails on
        ledger, or its blockhash expires.

        Inclusion with an execution error is FAILED. Raises SubmissionTimeout
        when ``deadline`` passes first.
        """
        deadline = deadline or Deadline()
        sig_text = str(signature)

        while True:
            deadline.check("confirm")
            status = await deadline.run(self.get_signature_status(signature), "confirm")
            if status is not None:
                if status.err is not None:
                    error = str(status.err)
                    logger.warning(f"Transaction {sig_text[:16]}... failed on ledger: {error}")
                    return Confirmation(ConfirmationOutcome.FAILED, error=error, slot=status.slot)
                if meets_commitment(status.confirmation_status, self.commitment):
                    logger.info(f"Transaction {sig_text[:16]}... reached {self.commitment}")
                    return Confirmation(ConfirmationOutcome.CONFIRMED, slot=status.slot)

            height = await deadline.run(self.get_block_height(), "confirm")
            if height > expiry_height:
                logger.warning(
                    f"Transaction {sig_text[:16]}... not seen before block height {expiry_height}"
                )
                return Confirmation(ConfirmationOutcome.EXPIRED, error="block height exceeded")

            wait = self.poll_interval
            remaining = deadline.remaining()
            if remaining is not None:
                wait = min(wait, remaining)
            await self._sleep(wait)
