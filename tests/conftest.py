"""
stakeline Test Configuration

Shared fixtures and fakes:
- Deterministic keypairs
- A sleep recorder so backoff can be asserted without waiting
- FakeLedger, an in-memory stand-in for LedgerRpc
"""

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from stakeline.ledger_rpc import BlockhashInfo, Confirmation, ConfirmationOutcome, SimulationReport
from stakeline.signer import CanSendTransaction, CanSignAndSend, KeypairSigner


def make_keypair(seed: int) -> Keypair:
    return Keypair.from_seed(bytes([seed]) * 32)


def rpc_response(value: Any) -> SimpleNamespace:
    return SimpleNamespace(value=value)


def sample_instruction(payer: Pubkey, program_id: Optional[Pubkey] = None) -> Instruction:
    if program_id is None:
        program_id = make_keypair(200).pubkey()
    return Instruction(program_id, b"\x01", [AccountMeta(payer, True, True)])


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakePool:
    """Runs operations against a single fake client."""

    def __init__(self, client: Any = "client-0"):
        self.client = client
        self.calls = 0

    async def execute(self, operation, **kwargs):
        self.calls += 1
        return await operation(self.client)


class FakeLedger:
    """
    In-memory LedgerRpc.

    Balances are served from a per-address list, one entry per read (the
    last entry repeats). Simulation results, send errors and confirmations
    are consumed in order; when a list runs out the call succeeds.
    """

    def __init__(self, balances: Optional[Dict[Pubkey, List[int]]] = None, expiry_height: int = 1000):
        self.balances = balances or {}
        self.balance_reads: List[Pubkey] = []
        self.accounts: Dict[Pubkey, bytes] = {}
        self.simulations: List[SimulationReport] = []
        self.send_errors: List[BaseException] = []
        self.confirmations: List[Any] = []
        self.simulated: List[Transaction] = []
        self.sent: List[Transaction] = []
        self.confirmed: List[Any] = []
        self.blockhashes: List[Hash] = []
        self.expiry_height = expiry_height
        self.pool = FakePool()

    async def get_balance(self, address: Pubkey) -> int:
        self.balance_reads.append(address)
        series = self.balances.get(address, [0])
        value = series[0]
        if len(series) > 1:
            series.pop(0)
        return value

    async def get_latest_blockhash(self) -> BlockhashInfo:
        blockhash = Hash.new_unique()
        self.blockhashes.append(blockhash)
        return BlockhashInfo(blockhash, self.expiry_height)

    async def get_account_info(self, address: Pubkey) -> Optional[bytes]:
        return self.accounts.get(address)

    async def simulate(self, transaction) -> SimulationReport:
        self.simulated.append(transaction)
        if self.simulations:
            return self.simulations.pop(0)
        return SimulationReport()

    async def send_raw(self, transaction, *, skip_preflight: bool = True):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(transaction)
        return transaction.signatures[0]

    async def confirm(self, signature, expiry_height, deadline=None) -> Confirmation:
        self.confirmed.append(signature)
        if self.confirmations:
            outcome = self.confirmations.pop(0)
            if outcome == "hang":
                return await deadline.run(asyncio.sleep(5), "confirm")
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return Confirmation(ConfirmationOutcome.CONFIRMED, slot=42)


class WalletAdapterSigner(CanSendTransaction):
    """Wallet that signs and sends through the connection it is handed."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair
        self.clients: List[Any] = []

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    async def send_transaction(self, transaction, client):
        self.clients.append(client)
        message = transaction.message
        return Transaction([self._keypair], message, message.recent_blockhash).signatures[0]


class ExtensionSigner(CanSignAndSend):
    """Wallet that owns its own transport."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair
        self.sent: List[Transaction] = []

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    async def sign_and_send_transaction(self, transaction):
        message = transaction.message
        signed = Transaction([self._keypair], message, message.recent_blockhash)
        self.sent.append(signed)
        return signed.signatures[0]


@pytest.fixture
def user_keypair() -> Keypair:
    return make_keypair(1)


@pytest.fixture
def user_signer(user_keypair) -> KeypairSigner:
    return KeypairSigner(user_keypair)


@pytest.fixture
def reserve_signer() -> KeypairSigner:
    return KeypairSigner(make_keypair(2))


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()
