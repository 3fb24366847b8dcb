"""
Tests for stakeline/transaction_pipeline.py

Tests cover:
- The happy path and its state history
- Simulation failures (nothing broadcast, no refund check)
- Included-but-failed transactions and balance-based refunds
- Bounded blockhash rebuild
- Deadlines
- Signer capability selection
- Local pre-checks
"""

import struct
from types import SimpleNamespace

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer

from conftest import ExtensionSigner, FakeLedger, WalletAdapterSigner, make_keypair, sample_instruction
from stakeline.compensation import CompensationEngine
from stakeline.errors import (
    AuthorizationError,
    BlockhashExpiredError,
    ErrorKind,
    SimulationError,
    SubmissionError,
    SubmissionTimeout,
    ValidationError,
)
from stakeline.ledger_rpc import Confirmation, ConfirmationOutcome, SimulationReport
from stakeline.transaction_pipeline import (
    SubmissionState,
    TransactionPipeline,
    TransactionRequest,
)

PRE = 1_000_000
FEE = 5_000


@pytest.fixture
def user(user_keypair):
    return user_keypair.pubkey()


@pytest.fixture
def request_(user):
    return TransactionRequest.of([sample_instruction(user)], user)


@pytest.fixture
def pipeline(ledger, reserve_signer):
    return TransactionPipeline(ledger, CompensationEngine(ledger, reserve_signer))


def failed(error="InstructionError(0, Custom(6))"):
    return Confirmation(ConfirmationOutcome.FAILED, error=error, slot=5)


def expired():
    return Confirmation(ConfirmationOutcome.EXPIRED, error="block height exceeded")


def refund_amount(transaction) -> int:
    instruction = transaction.message.instructions[0]
    discriminator, lamports = struct.unpack("<IQ", bytes(instruction.data))
    assert discriminator == 2
    return lamports


class TestHappyPath:
    """Test successful submissions."""

    @pytest.mark.asyncio
    async def test_confirmed(self, ledger, pipeline, user_signer, user, request_):
        """A clean submission walks every state in order."""
        ledger.balances[user] = [PRE, PRE - FEE]

        result = await pipeline.submit(user_signer, request_, "stake")

        assert result.state is SubmissionState.CONFIRMED
        assert result.history == [
            SubmissionState.BUILT,
            SubmissionState.SIMULATED,
            SubmissionState.SENT,
            SubmissionState.CONFIRMED,
        ]
        assert result.signature == str(ledger.sent[0].signatures[0])
        assert result.fee_lamports == FEE
        assert result.slot == 42
        assert result.blockhash_refreshes == 0

    @pytest.mark.asyncio
    async def test_signed_by_wallet(self, ledger, pipeline, user_signer, request_):
        """The broadcast transaction carries the wallet's signature."""
        await pipeline.submit(user_signer, request_)

        sent = ledger.sent[0]
        assert sent.message.account_keys[0] == user_signer.public_key
        assert sent.message.recent_blockhash == ledger.blockhashes[0]
        sent.verify()

    @pytest.mark.asyncio
    async def test_without_simulation(self, ledger, pipeline, user_signer, request_):
        """Skipping simulation goes straight to broadcast."""
        result = await pipeline.submit(user_signer, request_, simulate_first=False)

        assert ledger.simulated == []
        assert result.history == [SubmissionState.BUILT, SubmissionState.SENT, SubmissionState.CONFIRMED]

    @pytest.mark.asyncio
    async def test_no_refund_on_success(self, ledger, pipeline, user_signer, user, request_):
        """Fees on a successful submission are never refunded."""
        ledger.balances[user] = [PRE, PRE - FEE]

        await pipeline.submit(user_signer, request_)

        assert len(ledger.sent) == 1


class TestSimulationFailure:
    """Test failures caught by the dry run."""

    @pytest.mark.asyncio
    async def test_nothing_broadcast(self, ledger, pipeline, user_signer, user, request_):
        """A failing simulation never reaches the network."""
        ledger.simulations = [SimulationReport(err="InstructionError(0, Custom(1))", logs=["Program log: nope"])]

        with pytest.raises(SimulationError) as exc_info:
            await pipeline.submit(user_signer, request_, "stake")

        error = exc_info.value
        assert error.kind is ErrorKind.SIMULATION
        assert "Custom program error 1" in error.hint
        assert error.signature is None
        assert error.state == "failed"
        assert ledger.sent == []
        assert ledger.balance_reads == [user]
        assert error.refund is None
        assert error.refund_error is None

    @pytest.mark.asyncio
    async def test_insufficient_funds_hint(self, ledger, pipeline, user_signer, request_):
        """Insufficient funds surface with a readable hint."""
        ledger.simulations = [SimulationReport(err="InsufficientFundsForFee")]

        with pytest.raises(SimulationError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.hint == "Insufficient funds for fee or transfer."

    @pytest.mark.asyncio
    async def test_missing_signature_is_authorization(self, ledger, pipeline, user_signer, request_):
        """Ledger-side signature rejections are authorization failures."""
        ledger.simulations = [SimulationReport(err="MissingRequiredSignature")]

        with pytest.raises(SimulationError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.kind is ErrorKind.AUTHORIZATION


class TestCompensation:
    """Test refunds after a broadcast transaction fails."""

    @pytest.mark.asyncio
    async def test_refunds_exact_difference(self, ledger, pipeline, user_signer, reserve_signer, user, request_):
        """Value deducted by a failed transaction is refunded exactly once."""
        ledger.balances[user] = [PRE, PRE - FEE]
        ledger.confirmations = [failed()]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_, "stake")

        error = exc_info.value
        assert error.kind is ErrorKind.EXECUTION
        assert error.signature == str(ledger.sent[0].signatures[0])
        assert error.state == "refund_issued"
        assert error.refund.amount_raw == FEE
        assert error.refund.recipient == user
        assert error.refund.triggering_operation == "stake"

        assert len(ledger.sent) == 2
        refund_tx = ledger.sent[1]
        assert refund_tx.message.account_keys[0] == reserve_signer.public_key
        assert refund_amount(refund_tx) == FEE
        assert error.refund.compensation_signature == str(refund_tx.signatures[0])
        assert "refunded" in error.user_message

    @pytest.mark.asyncio
    async def test_no_deduction_skips_refund(self, ledger, pipeline, user_signer, user, request_):
        """An unchanged balance produces no refund transaction."""
        ledger.balances[user] = [PRE]
        ledger.confirmations = [failed()]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.state == "refund_skipped"
        assert exc_info.value.refund is None
        assert len(ledger.sent) == 1

    @pytest.mark.asyncio
    async def test_balance_increase_skips_refund(self, ledger, pipeline, user_signer, user, request_):
        """A balance that grew meanwhile is not refunded."""
        ledger.balances[user] = [PRE, PRE + 10]
        ledger.confirmations = [failed()]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.state == "refund_skipped"

    @pytest.mark.asyncio
    async def test_refund_failure_reported(self, ledger, pipeline, user_signer, user, request_):
        """A refund that cannot confirm is reported, not hidden."""
        ledger.balances[user] = [PRE, PRE - FEE]
        ledger.confirmations = [failed(), expired()]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_)

        error = exc_info.value
        assert error.refund is None
        assert error.refund_error is not None
        assert error.refund_error.amount == FEE
        assert "compensation_signature" in error.refund_error.details
        assert error.state == "failed"
        assert "contact support" in error.user_message

    @pytest.mark.asyncio
    async def test_refund_disabled(self, ledger, user_signer, user, request_):
        """Without a reserve the deduction is reported as unrefunded."""
        pipeline = TransactionPipeline(ledger)
        ledger.balances[user] = [PRE, PRE - FEE]
        ledger.confirmations = [failed()]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.refund_error.message == "No refund reserve configured"
        assert len(ledger.sent) == 1

    @pytest.mark.asyncio
    async def test_program_rejection_is_authorization(self, ledger, pipeline, user_signer, request_):
        """An unauthorized failure on ledger keeps its kind."""
        ledger.confirmations = [failed("Unauthorized: admin only")]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.kind is ErrorKind.AUTHORIZATION

    @pytest.mark.asyncio
    async def test_transient_send_failure(self, ledger, pipeline, user_signer, user, request_):
        """Exhausted transport failures surface as transient and are checked for refunds."""
        ledger.send_errors = [ConnectionResetError("connection reset by peer")]

        with pytest.raises(SubmissionError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.kind is ErrorKind.TRANSIENT
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert ledger.balance_reads == [user, user]


class TestBlockhashRebuild:
    """Test the bounded rebuild on an expired blockhash."""

    @pytest.mark.asyncio
    async def test_one_rebuild(self, ledger, pipeline, user_signer, request_):
        """An expired blockhash is replaced once and the submission succeeds."""
        ledger.confirmations = [expired()]

        result = await pipeline.submit(user_signer, request_)

        assert result.state is SubmissionState.CONFIRMED
        assert result.blockhash_refreshes == 1
        assert len(ledger.blockhashes) == 2
        assert ledger.sent[0].message.recent_blockhash == ledger.blockhashes[0]
        assert ledger.sent[1].message.recent_blockhash == ledger.blockhashes[1]
        assert result.signature == str(ledger.sent[1].signatures[0])

    @pytest.mark.asyncio
    async def test_expired_twice(self, ledger, pipeline, user_signer, request_):
        """A second expiry is terminal."""
        ledger.confirmations = [expired(), expired()]

        with pytest.raises(BlockhashExpiredError) as exc_info:
            await pipeline.submit(user_signer, request_)

        assert exc_info.value.kind is ErrorKind.EXPIRED
        assert len(ledger.sent) == 2

    @pytest.mark.asyncio
    async def test_simulation_blockhash_not_found(self, ledger, pipeline, user_signer, request_):
        """A stale blockhash seen by simulation is rebuilt before broadcast."""
        ledger.simulations = [SimulationReport(err="BlockhashNotFound")]

        result = await pipeline.submit(user_signer, request_)

        assert result.blockhash_refreshes == 1
        assert len(ledger.sent) == 1
        assert ledger.sent[0].message.recent_blockhash == ledger.blockhashes[1]

    @pytest.mark.asyncio
    async def test_rebuild_disabled(self, ledger, user_signer, request_):
        """With no rebuilds allowed the first expiry is terminal."""
        pipeline = TransactionPipeline(ledger, max_blockhash_refreshes=0)
        ledger.confirmations = [expired()]

        with pytest.raises(BlockhashExpiredError):
            await pipeline.submit(user_signer, request_)


class TestDeadline:
    """Test the submission deadline."""

    @pytest.mark.asyncio
    async def test_timeout_checks_compensation(self, ledger, pipeline, user_signer, user, request_):
        """A timeout after broadcast still refunds deducted value."""
        ledger.balances[user] = [PRE, PRE - FEE]
        ledger.confirmations = ["hang"]

        with pytest.raises(SubmissionTimeout) as exc_info:
            await pipeline.submit(user_signer, request_, timeout=0.05)

        error = exc_info.value
        assert error.kind is ErrorKind.TIMEOUT
        assert error.signature == str(ledger.sent[0].signatures[0])
        assert error.refund.amount_raw == FEE

    @pytest.mark.asyncio
    async def test_zero_timeout(self, ledger, pipeline, user_signer, request_):
        """An already elapsed deadline times out without broadcasting."""
        with pytest.raises(SubmissionTimeout):
            await pipeline.submit(user_signer, request_, timeout=0)

        assert ledger.sent == []


class TestSignerCapabilities:
    """Test capability selection."""

    @pytest.mark.asyncio
    async def test_send_capability_uses_pool_client(self, ledger, pipeline, user_keypair, request_):
        """Send-capable wallets receive a connection from the pool."""
        signer = WalletAdapterSigner(user_keypair)

        result = await pipeline.submit(signer, request_)

        assert signer.clients == ["client-0"]
        assert ledger.pool.calls == 1
        assert ledger.sent == []
        assert result.state is SubmissionState.CONFIRMED

    @pytest.mark.asyncio
    async def test_sign_and_send_capability(self, ledger, pipeline, user_keypair, request_):
        """Sign-and-send wallets use their own transport."""
        signer = ExtensionSigner(user_keypair)

        result = await pipeline.submit(signer, request_)

        assert len(signer.sent) == 1
        assert ledger.pool.calls == 0
        assert result.signature == str(signer.sent[0].signatures[0])

    @pytest.mark.asyncio
    async def test_no_capability(self, ledger, pipeline, user, request_):
        """An object that cannot sign is refused before any network call."""
        signer = SimpleNamespace(public_key=user)

        with pytest.raises(AuthorizationError):
            await pipeline.submit(signer, request_)

        assert ledger.balance_reads == []


class TestPrecheck:
    """Test local validation before the network is touched."""

    @pytest.mark.asyncio
    async def test_system_program_transfer(self, ledger, pipeline, user_signer, user):
        """Native transfers through the System Program pass the pre-check."""
        other = make_keypair(9).pubkey()
        ix = transfer(TransferParams(from_pubkey=user, to_pubkey=other, lamports=10))
        ledger.balances[user] = [PRE, PRE - FEE - 10]

        result = await pipeline.submit(user_signer, TransactionRequest.of([ix], user), "transfer")

        assert result.state is SubmissionState.CONFIRMED
        assert ledger.sent[0].message.account_keys[-1] == SYSTEM_PROGRAM_ID

    @pytest.mark.asyncio
    async def test_non_pubkey_program_address(self, ledger, pipeline, user_signer, user):
        """A program address that is not a Pubkey is malformed."""
        bad = SimpleNamespace(program_id=str(make_keypair(200).pubkey()), accounts=[], data=b"")
        request = TransactionRequest(instructions=[bad], fee_payer=user)

        with pytest.raises(ValidationError):
            await pipeline.submit(user_signer, request)

        assert ledger.balance_reads == []

    @pytest.mark.asyncio
    async def test_no_instructions(self, pipeline, user_signer, user):
        """Empty transactions are rejected."""
        with pytest.raises(ValidationError):
            await pipeline.submit(user_signer, TransactionRequest.of([], user))

    @pytest.mark.asyncio
    async def test_foreign_signer(self, ledger, pipeline, user_signer, user):
        """An instruction needing another wallet's signature is refused."""
        admin = make_keypair(9).pubkey()
        ix = Instruction(make_keypair(200).pubkey(), b"\x04", [AccountMeta(admin, True, False)])

        with pytest.raises(AuthorizationError):
            await pipeline.submit(user_signer, TransactionRequest.of([ix], user))

        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_fee_payer_mismatch(self, pipeline, user_signer, user):
        """The fee payer must be the signing wallet."""
        other = make_keypair(9).pubkey()
        request = TransactionRequest.of([sample_instruction(user)], other)

        with pytest.raises(AuthorizationError):
            await pipeline.submit(user_signer, request)

    def test_message_needs_blockhash(self, user):
        """A request without a blockhash cannot be compiled."""
        with pytest.raises(ValidationError):
            TransactionRequest.of([sample_instruction(user)], user).to_message()


class TestFromConfig:
    """Test construction from configuration."""

    def test_pipeline_settings(self):
        """Pipeline settings are read from the config section."""
        config = SimpleNamespace(confirm_timeout_seconds=12.0, max_blockhash_refreshes=2, simulate_first=False)
        pipeline = TransactionPipeline.from_config(FakeLedger(), config)

        assert pipeline.confirm_timeout == 12.0
        assert pipeline.max_blockhash_refreshes == 2
        assert pipeline.simulate_first is False
        assert pipeline.compensation is None
