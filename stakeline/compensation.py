"""
Compensation for submissions that failed after value left the caller.

When a broadcast transaction ultimately fails but the caller's native
balance dropped anyway (fees, partially applied effects), a separate
transfer from the funded reserve returns the difference. The refund is its
own ledger transaction, never a retry of the original.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from stakeline.deadline import Deadline
from stakeline.errors import ConfigurationError, RefundError
from stakeline.ledger_rpc import ConfirmationOutcome, LedgerRpc
from stakeline.logging_config import get_logger
from stakeline.signer import CanSignTransaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class RefundRecord:
    recipient: Pubkey
    amount_raw: int
    triggering_operation: str
    compensation_signature: str


class CompensationEngine:
    """
    Issues refunds signed by one reserve signer.

    Refunds from the same engine are serialized so overlapping transfers
    never race on the reserve's blockhash. Share one engine per reserve.
    """

    def __init__(self, rpc: LedgerRpc, reserve_signer: CanSignTransaction, *, confirm_timeout: float = 60.0):
        if not isinstance(reserve_signer, CanSignTransaction):
            raise ConfigurationError(
                f"Reserve signer must be able to sign locally, got {type(reserve_signer).__name__}"
            )
        self.rpc = rpc
        self.reserve_signer = reserve_signer
        self.confirm_timeout = confirm_timeout
        self._lock = asyncio.Lock()

    @property
    def reserve(self) -> Pubkey:
        return self.reserve_signer.public_key

    async def compensate(
        self,
        recipient: Pubkey,
        pre_balance: int,
        post_balance: int,
        operation: str,
    ) -> Optional[RefundRecord]:
        """Refund ``pre_balance - post_balance`` if positive; None otherwise."""
        deducted = pre_balance - post_balance
        if deducted <= 0:
            logger.info(
                f"No value deducted from {recipient} by failed {operation}, refund skipped",
                recipient=str(recipient), operation=operation, deducted=deducted,
            )
            return None
        logger.info(
            f"{deducted} lamports deducted from {recipient} by failed {operation}, refunding",
            recipient=str(recipient), operation=operation, deducted=deducted,
        )
        return await self.issue_refund(recipient, deducted, operation)

    async def issue_refund(self, recipient: Pubkey, amount: int, operation: str) -> RefundRecord:
        if amount <= 0:
            raise RefundError(f"Refund amount must be positive, got {amount}", str(recipient), amount)

        async with self._lock:
            signature = None
            try:
                info = await self.rpc.get_latest_blockhash()
                instruction = transfer(
                    TransferParams(from_pubkey=self.reserve, to_pubkey=recipient, lamports=amount)
                )
                message = Message.new_with_blockhash([instruction], self.reserve, info.blockhash)
                signed = await self.reserve_signer.sign_transaction(Transaction.new_unsigned(message))
                # Signed once; the pool may resend these exact bytes but never re-signs.
                signature = await self.rpc.send_raw(signed, skip_preflight=False)
                confirmation = await self.rpc.confirm(
                    signature,
                    info.last_valid_block_height,
                    Deadline.after(self.confirm_timeout),
                )
            except Exception as exc:
                logger.error(
                    f"Refund of {amount} lamports to {recipient} failed: {exc}",
                    recipient=str(recipient), operation=operation, amount=amount,
                )
                error = RefundError(f"Refund for {operation} failed: {exc}", str(recipient), amount)
                if signature is not None:
                    error.details["compensation_signature"] = str(signature)
                raise error from exc

            if confirmation.outcome is not ConfirmationOutcome.CONFIRMED:
                logger.error(
                    f"Refund {signature} to {recipient} did not confirm: "
                    f"{confirmation.outcome.value} {confirmation.error or ''}"
                )
                error = RefundError(
                    f"Refund for {operation} did not confirm ({confirmation.outcome.value})",
                    str(recipient),
                    amount,
                )
                error.details["compensation_signature"] = str(signature)
                raise error

        logger.info(
            f"Refunded {amount} lamports to {recipient} for {operation}: {signature}",
            recipient=str(recipient), operation=operation, amount=amount,
            compensation_signature=str(signature),
        )
        return RefundRecord(
            recipient=recipient,
            amount_raw=amount,
            triggering_operation=operation,
            compensation_signature=str(signature),
        )
