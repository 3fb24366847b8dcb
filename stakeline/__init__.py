"""
stakeline: fault-tolerant transaction submission and reward accounting
for the staking and multi-hub swap programs.
"""

from stakeline.compensation import CompensationEngine, RefundRecord
from stakeline.connection_pool import ConnectionPool, EndpointDescriptor
from stakeline.instruction_encoder import InstructionEncoder, MULTIHUB_SWAP_V4, SCHEMAS, STAKING_V1
from stakeline.ledger_rpc import LedgerRpc
from stakeline.services import Services, build_services
from stakeline.signer import CanSendTransaction, CanSignAndSend, CanSignTransaction, KeypairSigner
from stakeline.staking_client import StakingClient
from stakeline.swap_client import SwapClient
from stakeline.transaction_pipeline import SubmissionResult, SubmissionState, TransactionPipeline, TransactionRequest

__version__ = "0.1.0"

__all__ = [
    "CanSendTransaction",
    "CanSignAndSend",
    "CanSignTransaction",
    "CompensationEngine",
    "ConnectionPool",
    "EndpointDescriptor",
    "InstructionEncoder",
    "KeypairSigner",
    "LedgerRpc",
    "MULTIHUB_SWAP_V4",
    "RefundRecord",
    "SCHEMAS",
    "STAKING_V1",
    "Services",
    "StakingClient",
    "SubmissionResult",
    "SubmissionState",
    "SwapClient",
    "TransactionPipeline",
    "TransactionRequest",
    "build_services",
]
