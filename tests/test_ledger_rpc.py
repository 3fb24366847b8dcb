"""
Tests for stakeline/ledger_rpc.py

Tests cover:
- Response unwrapping and JSON-RPC error payloads
- Confirmation polling outcomes (confirmed, failed on ledger, expired)
- Deadline handling while confirming
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.hash import Hash
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from conftest import SleepRecorder, make_keypair, rpc_response
from stakeline.connection_pool import ConnectionPool, EndpointDescriptor
from stakeline.deadline import Deadline
from stakeline.errors import StakelineError, SubmissionTimeout, TransientNetworkError
from stakeline.ledger_rpc import ConfirmationOutcome, LedgerRpc, meets_commitment

SIGNATURE = Signature.default()


def status(err=None, confirmation=TransactionConfirmationStatus.Confirmed, slot=10):
    return SimpleNamespace(err=err, confirmation_status=confirmation, slot=slot)


class SignedBytes:
    def __bytes__(self):
        return b"signed-bytes"


def make_rpc(*clients, commitment="confirmed"):
    clients = list(clients)
    sleep = SleepRecorder()
    pool = ConnectionPool(
        [EndpointDescriptor(f"https://rpc{i}.example") for i in range(len(clients))],
        client_factory=lambda d: clients.pop(0),
        sleep=sleep,
    )
    return LedgerRpc(pool, commitment=commitment, poll_interval=0.01, sleep=sleep), sleep


def client_mock():
    client = MagicMock()
    client.get_latest_blockhash = AsyncMock()
    client.get_block_height = AsyncMock(return_value=rpc_response(1))
    client.get_balance = AsyncMock()
    client.get_account_info = AsyncMock()
    client.get_token_account_balance = AsyncMock()
    client.get_signature_statuses = AsyncMock()
    client.simulate_transaction = AsyncMock()
    client.send_raw_transaction = AsyncMock()
    return client


class TestReads:
    """Test simple reads through the pool."""

    @pytest.mark.asyncio
    async def test_balance(self):
        """Balances are plain integers."""
        client = client_mock()
        client.get_balance.return_value = rpc_response(5_000)
        rpc, _ = make_rpc(client)
        assert await rpc.get_balance(make_keypair(1).pubkey()) == 5_000

    @pytest.mark.asyncio
    async def test_blockhash(self):
        """Blockhash comes with its last valid block height."""
        client = client_mock()
        blockhash = Hash.new_unique()
        client.get_latest_blockhash.return_value = rpc_response(
            SimpleNamespace(blockhash=blockhash, last_valid_block_height=321)
        )
        rpc, _ = make_rpc(client)
        info = await rpc.get_latest_blockhash()
        assert info.blockhash == blockhash
        assert info.last_valid_block_height == 321

    @pytest.mark.asyncio
    async def test_missing_account(self):
        """A missing account reads as None."""
        client = client_mock()
        client.get_account_info.return_value = rpc_response(None)
        rpc, _ = make_rpc(client)
        assert await rpc.get_account_info(make_keypair(1).pubkey()) is None

    @pytest.mark.asyncio
    async def test_account_data(self):
        """Account data is returned as bytes."""
        client = client_mock()
        client.get_account_info.return_value = rpc_response(SimpleNamespace(data=b"\x01\x02"))
        rpc, _ = make_rpc(client)
        assert await rpc.get_account_info(make_keypair(1).pubkey()) == b"\x01\x02"

    @pytest.mark.asyncio
    async def test_token_balance(self):
        """Token balances are raw integer amounts."""
        client = client_mock()
        client.get_token_account_balance.return_value = rpc_response(SimpleNamespace(amount="1500000000"))
        rpc, _ = make_rpc(client)
        assert await rpc.get_token_balance(make_keypair(1).pubkey()) == 1_500_000_000

    @pytest.mark.asyncio
    async def test_falls_back_on_transport_error(self):
        """A dead endpoint is skipped transparently."""
        dead = client_mock()
        dead.get_balance.side_effect = asyncio.TimeoutError()
        alive = client_mock()
        alive.get_balance.return_value = rpc_response(7)
        rpc, _ = make_rpc(dead, alive)
        assert await rpc.get_balance(make_keypair(1).pubkey()) == 7
        assert rpc.pool.last_successful_index == 1


class TestErrorPayloads:
    """Test JSON-RPC error responses."""

    @pytest.mark.asyncio
    async def test_deterministic_error_not_retried(self):
        """Invalid params surface without trying other endpoints."""
        first = client_mock()
        first.get_balance.return_value = SimpleNamespace(message="Invalid param: WrongSize")
        second = client_mock()
        rpc, _ = make_rpc(first, second)

        with pytest.raises(StakelineError, match="WrongSize"):
            await rpc.get_balance(make_keypair(1).pubkey())
        assert second.get_balance.await_count == 0

    @pytest.mark.asyncio
    async def test_address_digits_not_rate_limit(self):
        """Digits inside an address in the error text do not make it transient."""
        first = client_mock()
        first.get_account_info.return_value = SimpleNamespace(
            message="Invalid param: WrongSize for account 115QB92s429NvX8xWrongSizeAddr"
        )
        second = client_mock()
        rpc, sleep = make_rpc(first, second)

        with pytest.raises(StakelineError, match="WrongSize") as exc_info:
            await rpc.get_account_info(make_keypair(1).pubkey())

        assert not isinstance(exc_info.value, TransientNetworkError)
        assert first.get_account_info.await_count == 1
        assert second.get_account_info.await_count == 0
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_rate_limit_payload_retried(self):
        """Rate-limit payloads are transient and fall back."""
        first = client_mock()
        first.get_balance.return_value = SimpleNamespace(message="429 Too Many Requests")
        second = client_mock()
        second.get_balance.return_value = rpc_response(3)
        rpc, _ = make_rpc(first, second)
        assert await rpc.get_balance(make_keypair(1).pubkey()) == 3


class TestSimulateAndSend:
    """Test dry runs and broadcasts."""

    @pytest.mark.asyncio
    async def test_simulation_error_reported(self):
        """Simulation errors become a report, not an exception."""
        client = client_mock()
        client.simulate_transaction.return_value = rpc_response(
            SimpleNamespace(err="InsufficientFundsForFee", logs=["log 1"], units_consumed=0)
        )
        rpc, _ = make_rpc(client)
        report = await rpc.simulate(MagicMock())
        assert not report.ok
        assert report.err == "InsufficientFundsForFee"
        assert report.logs == ["log 1"]
        assert client.simulate_transaction.await_args.kwargs["sig_verify"] is False

    @pytest.mark.asyncio
    async def test_send_resends_same_bytes(self):
        """Fallback resends identical bytes to the next endpoint."""
        first = client_mock()
        first.send_raw_transaction.side_effect = ConnectionResetError("reset")
        second = client_mock()
        second.send_raw_transaction.return_value = rpc_response(SIGNATURE)
        rpc, _ = make_rpc(first, second)

        assert await rpc.send_raw(SignedBytes()) == SIGNATURE
        assert first.send_raw_transaction.await_args.args[0] == b"signed-bytes"
        assert second.send_raw_transaction.await_args.args[0] == b"signed-bytes"


class TestConfirm:
    """Test confirmation polling."""

    @pytest.mark.asyncio
    async def test_confirmed_after_polling(self):
        """Polls until the signature reaches the commitment."""
        client = client_mock()
        client.get_signature_statuses.side_effect = [
            rpc_response([None]),
            rpc_response([status(confirmation=TransactionConfirmationStatus.Processed)]),
            rpc_response([status(slot=99)]),
        ]
        rpc, sleep = make_rpc(client)

        confirmation = await rpc.confirm(SIGNATURE, expiry_height=100)

        assert confirmation.outcome is ConfirmationOutcome.CONFIRMED
        assert confirmation.slot == 99
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_included_with_error_is_failed(self):
        """Inclusion with an execution error is not success."""
        client = client_mock()
        client.get_signature_statuses.return_value = rpc_response(
            [status(err="InstructionError(0, Custom(6))")]
        )
        rpc, _ = make_rpc(client)

        confirmation = await rpc.confirm(SIGNATURE, expiry_height=100)

        assert confirmation.outcome is ConfirmationOutcome.FAILED
        assert "Custom(6)" in confirmation.error

    @pytest.mark.asyncio
    async def test_expired_after_block_height(self):
        """A signature never seen before expiry is EXPIRED."""
        client = client_mock()
        client.get_signature_statuses.return_value = rpc_response([None])
        client.get_block_height.side_effect = [rpc_response(99), rpc_response(101)]
        rpc, _ = make_rpc(client)

        confirmation = await rpc.confirm(SIGNATURE, expiry_height=100)

        assert confirmation.outcome is ConfirmationOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_deadline_elapsed(self):
        """An elapsed deadline raises SubmissionTimeout."""
        client = client_mock()
        client.get_signature_statuses.return_value = rpc_response([None])
        rpc, _ = make_rpc(client)

        with pytest.raises(SubmissionTimeout):
            await rpc.confirm(SIGNATURE, expiry_height=100, deadline=Deadline.after(0))

    def test_commitment_ranking(self):
        """Finalized satisfies confirmed; processed does not."""
        assert meets_commitment(TransactionConfirmationStatus.Finalized, "confirmed")
        assert not meets_commitment(TransactionConfirmationStatus.Processed, "confirmed")
        assert meets_commitment(None, "processed")

    @pytest.mark.parametrize("confirmation,commitment,expected", [
        (TransactionConfirmationStatus.Processed, "processed", True),
        (TransactionConfirmationStatus.Processed, "finalized", False),
        (TransactionConfirmationStatus.Confirmed, "confirmed", True),
        (TransactionConfirmationStatus.Confirmed, "finalized", False),
        (TransactionConfirmationStatus.Finalized, "finalized", True),
        (None, "confirmed", False),
    ])
    def test_commitment_matrix(self, confirmation, commitment, expected):
        """Every ledger status ranks against every commitment level."""
        assert meets_commitment(confirmation, commitment) is expected

    @pytest.mark.asyncio
    async def test_finalized_commitment_waits(self):
        """A finalized pipeline keeps polling through confirmed."""
        client = client_mock()
        client.get_signature_statuses.side_effect = [
            rpc_response([status()]),
            rpc_response([status(confirmation=TransactionConfirmationStatus.Finalized, slot=12)]),
        ]
        rpc, sleep = make_rpc(client, commitment="finalized")

        confirmation = await rpc.confirm(SIGNATURE, expiry_height=100)

        assert confirmation.outcome is ConfirmationOutcome.CONFIRMED
        assert confirmation.slot == 12
        assert len(sleep.delays) == 1


class TestTransientPayload:
    """Test TransientNetworkError construction from payloads."""

    @pytest.mark.asyncio
    async def test_exhausted_rate_limit(self):
        """Every endpoint rate limited surfaces a transient error."""
        client = client_mock()
        client.get_balance.return_value = SimpleNamespace(message="rate limit exceeded")
        rpc, sleep = make_rpc(client)

        with pytest.raises(TransientNetworkError):
            await rpc.get_balance(make_keypair(1).pubkey())
        assert len(sleep.delays) == rpc.pool.max_retries - 1
