"""Staking program account layouts and fetch helpers."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, replace
from typing import Optional

from solders.pubkey import Pubkey

from stakeline.errors import StakelineError, ValidationError
from stakeline.pda import find_staking_account, find_staking_program_state

logger = logging.getLogger(__name__)

# owner[32] | staked u64 | start i64 | last_harvest i64 | total_harvested u64
_STAKE_ACCOUNT = struct.Struct("<32sQqqQ")
# admin[32] | stake_mint[32] | reward_mint[32] | rate_bps u64 | threshold u64
_PROGRAM_STATE = struct.Struct("<32s32s32sQQ")


@dataclass(frozen=True)
class StakeAccountSnapshot:
    """One owner's stake as last read from the ledger."""
    owner: Pubkey
    staked_amount_raw: int
    start_timestamp: int
    last_harvest_time: int
    total_harvested_raw: int = 0

    @classmethod
    def from_account_data(cls, data: bytes) -> "StakeAccountSnapshot":
        if len(data) < _STAKE_ACCOUNT.size:
            raise ValidationError(
                f"Staking account data is {len(data)} bytes, expected {_STAKE_ACCOUNT.size}"
            )
        owner, staked, start, last_harvest, harvested = _STAKE_ACCOUNT.unpack_from(data)
        return cls(Pubkey.from_bytes(owner), staked, start, last_harvest, harvested)

    def to_account_data(self) -> bytes:
        return _STAKE_ACCOUNT.pack(
            bytes(self.owner),
            self.staked_amount_raw,
            self.start_timestamp,
            self.last_harvest_time,
            self.total_harvested_raw,
        )

    def harvested(self, confirmed_at: int, reward_raw: int) -> "StakeAccountSnapshot":
        """State after a harvest confirmed at ``confirmed_at`` paid ``reward_raw``."""
        return replace(
            self,
            last_harvest_time=confirmed_at,
            total_harvested_raw=self.total_harvested_raw + reward_raw,
        )


@dataclass(frozen=True)
class ProgramRateState:
    stake_rate_basis_points: int
    harvest_threshold_raw: int
    admin: Optional[Pubkey] = None
    stake_mint: Optional[Pubkey] = None
    reward_mint: Optional[Pubkey] = None

    @classmethod
    def from_account_data(cls, data: bytes) -> "ProgramRateState":
        if len(data) < _PROGRAM_STATE.size:
            raise ValidationError(
                f"Program state data is {len(data)} bytes, expected {_PROGRAM_STATE.size}"
            )
        admin, stake_mint, reward_mint, rate, threshold = _PROGRAM_STATE.unpack_from(data)
        return cls(
            stake_rate_basis_points=rate,
            harvest_threshold_raw=threshold,
            admin=Pubkey.from_bytes(admin),
            stake_mint=Pubkey.from_bytes(stake_mint),
            reward_mint=Pubkey.from_bytes(reward_mint),
        )

    def to_account_data(self) -> bytes:
        return _PROGRAM_STATE.pack(
            bytes(self.admin or Pubkey.default()),
            bytes(self.stake_mint or Pubkey.default()),
            bytes(self.reward_mint or Pubkey.default()),
            self.stake_rate_basis_points,
            self.harvest_threshold_raw,
        )


async def fetch_stake_snapshot(rpc, owner: Pubkey, program_id: Pubkey) -> Optional[StakeAccountSnapshot]:
    """Current stake for ``owner``; None if the owner never staked."""
    address, _ = find_staking_account(owner, program_id)
    data = await rpc.get_account_info(address)
    if data is None:
        return None
    return StakeAccountSnapshot.from_account_data(data)


async def fetch_program_rate_state(rpc, program_id: Pubkey) -> ProgramRateState:
    address, _ = find_staking_program_state(program_id)
    data = await rpc.get_account_info(address)
    if data is None:
        raise StakelineError(
            f"Staking program state {address} not found; the program is not initialized",
            {"program_state": str(address)},
        )
    return ProgramRateState.from_account_data(data)
