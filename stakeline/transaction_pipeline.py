"""
Transaction submission pipeline.

One submission runs as a straight sequence of suspension points:

    BUILT -> SIMULATED -> SENT -> CONFIRMED
    BUILT -> SIMULATED -> SENT -> FAILED -> REFUND_ISSUED | REFUND_SKIPPED

Transient RPC failures are absorbed by the ConnectionPool. A stale blockhash
gets a bounded rebuild with a fresh one. Everything else ends the
submission with a SubmissionError carrying the error kind, a user hint, the
broadcast signature and, when value was deducted, the refund outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from stakeline.compensation import CompensationEngine
from stakeline.deadline import Deadline
from stakeline.errors import (
    AuthorizationError,
    BlockhashExpiredError,
    ErrorKind,
    RefundError,
    SimulationError,
    SubmissionError,
    SubmissionTimeout,
    ValidationError,
    classify_error,
    describe_simulation_error,
    is_authorization_failure,
    is_blockhash_expired,
)
from stakeline.instruction_encoder import EncodedInstruction
from stakeline.ledger_rpc import BlockhashInfo, ConfirmationOutcome, LedgerRpc
from stakeline.logging_config import CorrelationContext
from stakeline.signer import SignerCapability, select_capability

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    BUILT = "built"
    SIMULATED = "simulated"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUND_ISSUED = "refund_issued"
    REFUND_SKIPPED = "refund_skipped"


@dataclass(frozen=True)
class TransactionRequest:
    """Instructions plus fee payer; a blockhash is attached by building a new request."""
    instructions: Tuple[Union[Instruction, EncodedInstruction], ...]
    fee_payer: Pubkey
    recent_blockhash: Optional[Hash] = None
    expiry_height: Optional[int] = None

    @classmethod
    def of(cls, instructions: Sequence[Union[Instruction, EncodedInstruction]], fee_payer: Pubkey) -> "TransactionRequest":
        return cls(tuple(instructions), fee_payer)

    def with_blockhash(self, info: BlockhashInfo) -> "TransactionRequest":
        return replace(self, recent_blockhash=info.blockhash, expiry_height=info.last_valid_block_height)

    def solders_instructions(self) -> List[Instruction]:
        return [
            ix.to_instruction() if isinstance(ix, EncodedInstruction) else ix
            for ix in self.instructions
        ]

    def to_message(self) -> Message:
        if self.recent_blockhash is None:
            raise ValidationError("Transaction has no blockhash attached")
        return Message.new_with_blockhash(self.solders_instructions(), self.fee_payer, self.recent_blockhash)

    def to_transaction(self) -> Transaction:
        return Transaction.new_unsigned(self.to_message())


@dataclass
class SubmissionResult:
    signature: str
    state: SubmissionState
    history: List[SubmissionState] = field(default_factory=list)
    pre_balance: int = 0
    post_balance: int = 0
    blockhash_refreshes: int = 0
    slot: Optional[int] = None

    @property
    def fee_lamports(self) -> int:
        """Observed balance change; includes anything else that moved the balance."""
        return max(0, self.pre_balance - self.post_balance)


@dataclass
class _Tracker:
    history: List[SubmissionState] = field(default_factory=lambda: [SubmissionState.BUILT])
    signature: Optional[str] = None
    broadcast_started: bool = False

    def advance(self, state: SubmissionState) -> None:
        logger.info(f"Submission {self.history[-1].value} -> {state.value}")
        self.history.append(state)

    @property
    def state(self) -> SubmissionState:
        return self.history[-1]


class TransactionPipeline:
    def __init__(
        self,
        rpc: LedgerRpc,
        compensation: Optional[CompensationEngine] = None,
        *,
        confirm_timeout: Optional[float] = 60.0,
        max_blockhash_refreshes: int = 1,
        simulate_first: bool = True,
    ):
        self.rpc = rpc
        self.compensation = compensation
        self.confirm_timeout = confirm_timeout
        self.max_blockhash_refreshes = max_blockhash_refreshes
        self.simulate_first = simulate_first

    @classmethod
    def from_config(cls, rpc: LedgerRpc, pipeline_config, compensation: Optional[CompensationEngine] = None) -> "TransactionPipeline":
        return cls(
            rpc,
            compensation,
            confirm_timeout=pipeline_config.confirm_timeout_seconds,
            max_blockhash_refreshes=pipeline_config.max_blockhash_refreshes,
            simulate_first=pipeline_config.simulate_first,
        )

    # ------------------------------------------------------------------
    # Pre-checks
    # ------------------------------------------------------------------

    def _precheck(self, signer, request: TransactionRequest) -> None:
        if not request.instructions:
            raise ValidationError("Transaction has no instructions")
        for index, ix in enumerate(request.solders_instructions()):
            program_id = ix.program_id
            if not isinstance(program_id, Pubkey):
                raise ValidationError(
                    f"Instruction {index} has a malformed program address: {program_id!r}",
                    {"instruction": index},
                )
            for meta in ix.accounts:
                if meta.is_signer and meta.pubkey not in (signer.public_key, request.fee_payer):
                    raise AuthorizationError(
                        f"Instruction {index} requires a signature from {meta.pubkey}, "
                        f"which the connected wallet cannot provide",
                        {"instruction": index, "signer": str(meta.pubkey)},
                    )
        if request.fee_payer != signer.public_key:
            raise AuthorizationError(
                f"Fee payer {request.fee_payer} is not the signing wallet {signer.public_key}",
                {"fee_payer": str(request.fee_payer)},
            )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        signer,
        request: TransactionRequest,
        description: str = "transaction",
        simulate_first: Optional[bool] = None,
        *,
        timeout: Optional[float] = None,
    ) -> SubmissionResult:
        """
        Simulate, sign, broadcast and confirm ``request``.

        Returns a CONFIRMED SubmissionResult or raises SubmissionError.
        Local problems (malformed address, wrong signer) raise
        ValidationError or AuthorizationError before anything touches the
        network.
        """
        if simulate_first is None:
            simulate_first = self.simulate_first
        capability = select_capability(signer)
        self._precheck(signer, request)
        deadline = Deadline.after(self.confirm_timeout if timeout is None else timeout)
        tracker = _Tracker()

        with CorrelationContext(operation=description) as context:
            pre_balance = await self.rpc.get_balance(request.fee_payer)
            logger.info(f"Pre-submission balance of {request.fee_payer}: {pre_balance}")

            try:
                signature, slot, refreshes = await self._run(
                    signer, capability, request, description, simulate_first, deadline, tracker, context
                )
            except SubmissionError as exc:
                await self._fail(exc, request, description, pre_balance, tracker)
                raise
            except (ValidationError, AuthorizationError):
                raise
            except Exception as exc:
                classified = classify_error(exc)
                error = SubmissionError(
                    f"{description} failed: {exc}",
                    classified.kind,
                    hint=describe_simulation_error(str(exc)) or classified.message,
                    signature=tracker.signature,
                    description=description,
                    cause=exc,
                )
                await self._fail(error, request, description, pre_balance, tracker)
                raise error from exc

            post_balance = await self.rpc.get_balance(request.fee_payer)
            result = SubmissionResult(
                signature=signature,
                state=SubmissionState.CONFIRMED,
                history=list(tracker.history),
                pre_balance=pre_balance,
                post_balance=post_balance,
                blockhash_refreshes=refreshes,
                slot=slot,
            )
            logger.info(f"{description} confirmed: {signature} (fee {result.fee_lamports} lamports)")
            return result

    async def _run(self, signer, capability, request, description, simulate_first, deadline, tracker, context):
        refreshes = 0
        current = request
        if current.recent_blockhash is None or current.expiry_height is None:
            current = request.with_blockhash(
                await deadline.run(self.rpc.get_latest_blockhash(), "blockhash")
            )

        while True:
            try:
                signature, slot = await self._attempt(
                    signer, capability, current, description, simulate_first, deadline, tracker, context
                )
                return signature, slot, refreshes
            except BlockhashExpiredError:
                if refreshes >= self.max_blockhash_refreshes:
                    raise
                refreshes += 1
                logger.info(f"Blockhash expired for {description}, rebuilding ({refreshes}/{self.max_blockhash_refreshes})")
                info = await deadline.run(self.rpc.get_latest_blockhash(), "blockhash")
                current = request.with_blockhash(info)

    async def _attempt(self, signer, capability, request, description, simulate_first, deadline, tracker, context):
        transaction = request.to_transaction()

        if simulate_first:
            report = await deadline.run(self.rpc.simulate(transaction), "simulate")
            if not report.ok:
                raise self._simulation_failure(report.err, report.logs, description)
            tracker.advance(SubmissionState.SIMULATED)

        tracker.broadcast_started = True
        try:
            signature = await deadline.run(
                self._broadcast(signer, capability, transaction, skip_preflight=simulate_first),
                "broadcast",
            )
        except SubmissionError:
            raise
        except Exception as exc:
            if is_blockhash_expired(str(exc)):
                raise BlockhashExpiredError(
                    f"{description} blockhash expired before broadcast",
                    ErrorKind.EXPIRED,
                    hint=describe_simulation_error(str(exc)),
                    description=description,
                    cause=exc,
                ) from exc
            raise

        tracker.signature = str(signature)
        context.bind_signature(tracker.signature)
        tracker.advance(SubmissionState.SENT)

        confirmation = await self.rpc.confirm(signature, request.expiry_height, deadline)
        if confirmation.outcome is ConfirmationOutcome.CONFIRMED:
            tracker.advance(SubmissionState.CONFIRMED)
            return tracker.signature, confirmation.slot
        if confirmation.outcome is ConfirmationOutcome.EXPIRED:
            raise BlockhashExpiredError(
                f"{description} was not included before its blockhash expired",
                ErrorKind.EXPIRED,
                hint=describe_simulation_error("BlockhashNotFound"),
                signature=tracker.signature,
                description=description,
            )

        error = confirmation.error or "unknown error"
        kind = ErrorKind.AUTHORIZATION if is_authorization_failure(error) else ErrorKind.EXECUTION
        raise SubmissionError(
            f"{description} was included but failed: {error}",
            kind,
            hint=describe_simulation_error(error),
            signature=tracker.signature,
            description=description,
        )

    def _simulation_failure(self, err: str, logs: List[str], description: str) -> SubmissionError:
        hint = describe_simulation_error(err)
        if is_blockhash_expired(err):
            return BlockhashExpiredError(
                f"{description} simulation hit an expired blockhash: {err}",
                ErrorKind.EXPIRED,
                hint=hint,
                description=description,
            )
        kind = ErrorKind.AUTHORIZATION if is_authorization_failure(err) else ErrorKind.SIMULATION
        for line in logs[-5:]:
            logger.debug(f"simulation log: {line}")
        logger.warning(f"{description} simulation failed: {err}")
        return SimulationError(
            f"{description} simulation failed: {err}",
            kind,
            hint=hint,
            description=description,
        )

    async def _broadcast(self, signer, capability: SignerCapability, transaction: Transaction, *, skip_preflight: bool) -> Signature:
        if capability is SignerCapability.SEND:
            return await self.rpc.pool.execute(
                lambda client: signer.send_transaction(transaction, client),
                label="sendTransaction",
            )
        if capability is SignerCapability.SIGN:
            signed = await signer.sign_transaction(transaction)
            return await self.rpc.send_raw(signed, skip_preflight=skip_preflight)
        # Wallet owns its transport.
        return await signer.sign_and_send_transaction(transaction)

    # ------------------------------------------------------------------
    # Failure and compensation
    # ------------------------------------------------------------------

    async def _fail(self, error: SubmissionError, request, description, pre_balance, tracker) -> None:
        tracker.advance(SubmissionState.FAILED)
        error.description = description
        error.signature = error.signature or tracker.signature
        error.details["history"] = [s.value for s in tracker.history]
        error.details["pre_balance"] = pre_balance

        if not tracker.broadcast_started and not isinstance(error, SubmissionTimeout):
            error.state = tracker.state.value
            logger.warning(f"{description} failed before broadcast: {error.message}")
            return

        try:
            post_balance = await self.rpc.get_balance(request.fee_payer)
        except Exception as exc:
            logger.error(f"Could not re-read balance after failed {description}: {exc}")
            error.refund_error = RefundError(
                f"Balance after failed {description} could not be read: {exc}",
                str(request.fee_payer),
            )
            error.state = tracker.state.value
            return

        error.details["post_balance"] = post_balance
        deducted = pre_balance - post_balance
        if deducted <= 0:
            tracker.advance(SubmissionState.REFUND_SKIPPED)
        elif self.compensation is None:
            logger.error(f"{deducted} lamports deducted by failed {description} but no reserve is configured")
            error.refund_error = RefundError(
                "No refund reserve configured", str(request.fee_payer), deducted
            )
        else:
            try:
                error.refund = await self.compensation.compensate(
                    request.fee_payer, pre_balance, post_balance, description
                )
                tracker.advance(SubmissionState.REFUND_ISSUED)
            except RefundError as refund_error:
                error.refund_error = refund_error

        error.state = tracker.state.value
        error.details["history"] = [s.value for s in tracker.history]
        logger.warning(f"{description} failed ({error.kind.value}): {error.message}")
