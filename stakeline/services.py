"""Wires configuration into a ready pool, pipeline and program clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from stakeline.compensation import CompensationEngine
from stakeline.config import StakelineConfig, load_config
from stakeline.connection_pool import ConnectionPool
from stakeline.ledger_rpc import LedgerRpc
from stakeline.signer import CanSignTransaction
from stakeline.staking_client import StakingClient
from stakeline.swap_client import SwapClient
from stakeline.transaction_pipeline import TransactionPipeline
from stakeline.wallet import load_reserve_signer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: StakelineConfig
    pool: ConnectionPool
    rpc: LedgerRpc
    pipeline: TransactionPipeline
    staking: StakingClient
    swap: SwapClient
    compensation: Optional[CompensationEngine] = None

    async def close(self) -> None:
        await self.pool.close()

    async def __aenter__(self) -> "Services":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def build_services(
    config: Optional[StakelineConfig] = None,
    *,
    reserve_signer: Optional[CanSignTransaction] = None,
    pool: Optional[ConnectionPool] = None,
) -> Services:
    """
    Build every collaborator from ``config`` (loaded from disk if omitted).

    The refund reserve comes from ``reserve_signer`` or the compensation
    config; compensation is disabled only when the config says so.
    """
    config = config or load_config()
    pool = pool or ConnectionPool.from_config(config.rpc)
    commitment = config.rpc.commitments[0] if config.rpc.commitments else "confirmed"
    rpc = LedgerRpc(pool, commitment=commitment, poll_interval=config.pipeline.poll_interval_seconds)

    compensation = None
    if config.compensation.enabled:
        signer = reserve_signer or load_reserve_signer(config.compensation)
        compensation = CompensationEngine(
            rpc, signer, confirm_timeout=config.pipeline.confirm_timeout_seconds
        )
    else:
        logger.warning("Compensation disabled; failed submissions will not be refunded")

    pipeline = TransactionPipeline.from_config(rpc, config.pipeline, compensation)
    return Services(
        config=config,
        pool=pool,
        rpc=rpc,
        pipeline=pipeline,
        staking=StakingClient.from_config(pipeline, config.staking),
        swap=SwapClient.from_config(pipeline, config.swap, config.staking),
        compensation=compensation,
    )
