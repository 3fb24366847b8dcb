"""
Staking program client.

Builds staking instructions with the staking-v1 schema and submits them
through the TransactionPipeline. Amounts are raw token units throughout;
convert with ``reward_engine.to_raw`` / ``from_raw`` at the edges.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from spl.token.instructions import create_associated_token_account

from stakeline.errors import AuthorizationError, HarvestNotReadyError, StakelineError, ValidationError
from stakeline.instruction_encoder import (
    STAKING_V1,
    HarvestRequest,
    InitializeStakingRequest,
    InstructionEncoder,
    StakeRequest,
    UnstakeRequest,
    UpdateParametersRequest,
)
from stakeline.ledger_state import (
    ProgramRateState,
    StakeAccountSnapshot,
    fetch_program_rate_state,
    fetch_stake_snapshot,
)
from stakeline.pda import (
    associated_token_address,
    find_program_authority,
    find_staking_account,
    find_staking_program_state,
)
from stakeline.reward_engine import (
    can_harvest,
    from_raw,
    pending_reward,
    projected_yields,
    rate_per_second,
)
from stakeline.transaction_pipeline import SubmissionResult, TransactionPipeline, TransactionRequest

logger = logging.getLogger(__name__)


@dataclass
class StakingInfo:
    owner: Pubkey
    staked_raw: int
    start_timestamp: int
    last_harvest_time: int
    total_harvested_raw: int
    pending_reward_raw: int
    harvest_threshold_raw: int
    rate_per_second: float
    can_harvest: bool
    decimals: int = 9

    @property
    def staked(self) -> Decimal:
        return from_raw(self.staked_raw, self.decimals)

    @property
    def pending_reward(self) -> Decimal:
        return from_raw(self.pending_reward_raw, self.decimals)

    @property
    def total_harvested(self) -> Decimal:
        return from_raw(self.total_harvested_raw, self.decimals)


@dataclass
class HarvestResult:
    submission: SubmissionResult
    reward_raw: int
    snapshot: StakeAccountSnapshot


class StakingClient:
    def __init__(
        self,
        pipeline: TransactionPipeline,
        program_id: Pubkey,
        stake_mint: Pubkey,
        reward_mint: Pubkey,
        *,
        decimals: int = 9,
        clock: Callable[[], float] = time.time,
    ):
        self.pipeline = pipeline
        self.rpc = pipeline.rpc
        self.program_id = program_id
        self.stake_mint = stake_mint
        self.reward_mint = reward_mint
        self.decimals = decimals
        self._clock = clock
        self.encoder = InstructionEncoder(STAKING_V1, program_id)
        self.program_state, _ = find_staking_program_state(program_id)
        self.program_authority, _ = find_program_authority(program_id)

    @classmethod
    def from_config(cls, pipeline: TransactionPipeline, staking_config, **kwargs) -> "StakingClient":
        return cls(
            pipeline,
            Pubkey.from_string(staking_config.program_id),
            Pubkey.from_string(staking_config.stake_mint),
            Pubkey.from_string(staking_config.reward_mint),
            decimals=staking_config.decimals,
            **kwargs,
        )

    def _now(self) -> int:
        return int(self._clock())

    async def _token_account(self, owner: Pubkey, mint: Pubkey, payer: Pubkey) -> Tuple[Pubkey, Optional[Instruction]]:
        """Associated token account for ``owner``, plus a create instruction if it is missing."""
        address = associated_token_address(owner, mint)
        if await self.rpc.get_account_info(address) is not None:
            return address, None
        logger.info(f"Token account {address} for mint {mint} missing, creating it")
        return address, create_associated_token_account(payer, owner, mint)

    async def _submit(self, signer, instructions: List, description: str) -> SubmissionResult:
        request = TransactionRequest.of(instructions, signer.public_key)
        return await self.pipeline.submit(signer, request, description)

    async def get_program_state(self) -> ProgramRateState:
        return await fetch_program_rate_state(self.rpc, self.program_id)

    async def get_stake_snapshot(self, owner: Pubkey) -> Optional[StakeAccountSnapshot]:
        return await fetch_stake_snapshot(self.rpc, owner, self.program_id)

    # ==========================================================================
    # User operations
    # ==========================================================================

    async def stake(self, signer, amount_raw: int) -> SubmissionResult:
        user = signer.public_key
        instructions = []
        user_token = associated_token_address(user, self.stake_mint)
        program_token, create_ix = await self._token_account(self.program_authority, self.stake_mint, user)
        if create_ix is not None:
            instructions.append(create_ix)

        staking_account, _ = find_staking_account(user, self.program_id)
        instructions.append(self.encoder.encode(StakeRequest(amount=amount_raw), {
            "user": user,
            "user_token": user_token,
            "program_token": program_token,
            "staking_account": staking_account,
            "program_state": self.program_state,
        }))
        return await self._submit(signer, instructions, "stake")

    async def unstake(self, signer, amount_raw: int) -> SubmissionResult:
        user = signer.public_key
        snapshot = await self.get_stake_snapshot(user)
        staked = snapshot.staked_amount_raw if snapshot else 0
        if amount_raw > staked:
            raise ValidationError(
                f"Cannot unstake {amount_raw}, only {staked} staked",
                {"requested": amount_raw, "staked": staked},
            )

        instructions = []
        user_token, create_ix = await self._token_account(user, self.stake_mint, user)
        if create_ix is not None:
            instructions.append(create_ix)

        staking_account, _ = find_staking_account(user, self.program_id)
        instructions.append(self.encoder.encode(UnstakeRequest(amount=amount_raw), {
            "user": user,
            "user_token": user_token,
            "program_token": associated_token_address(self.program_authority, self.stake_mint),
            "staking_account": staking_account,
            "program_state": self.program_state,
            "program_authority": self.program_authority,
        }))
        return await self._submit(signer, instructions, "unstake")

    async def harvest(self, signer) -> HarvestResult:
        """
        Claim accrued rewards.

        Refuses to submit while the pending reward is below the program's
        harvest threshold.
        """
        user = signer.public_key
        snapshot = await self.get_stake_snapshot(user)
        if snapshot is None:
            raise ValidationError(f"{user} has no staking account", {"owner": str(user)})
        state = await self.get_program_state()
        rate = rate_per_second(state.stake_rate_basis_points)
        now = self._now()
        if not can_harvest(snapshot, state.harvest_threshold_raw, rate, now):
            pending = pending_reward(snapshot, rate, now)
            raise HarvestNotReadyError(
                f"Pending reward {pending} is below the harvest threshold {state.harvest_threshold_raw}",
                pending=pending,
                threshold=state.harvest_threshold_raw,
            )

        instructions = []
        user_reward_token, create_ix = await self._token_account(user, self.reward_mint, user)
        if create_ix is not None:
            instructions.append(create_ix)

        staking_account, _ = find_staking_account(user, self.program_id)
        instructions.append(self.encoder.encode(HarvestRequest(), {
            "user": user,
            "user_reward_token": user_reward_token,
            "program_reward_token": associated_token_address(self.program_authority, self.reward_mint),
            "staking_account": staking_account,
            "program_state": self.program_state,
            "program_authority": self.program_authority,
        }))
        submission = await self._submit(signer, instructions, "harvest")

        # The program stamps last_harvest_time at confirmation; read it back.
        after = await self.get_stake_snapshot(user)
        if after is None:
            raise StakelineError(
                f"Staking account for {user} missing after harvest {submission.signature}",
                {"owner": str(user), "signature": submission.signature},
            )
        reward = after.total_harvested_raw - snapshot.total_harvested_raw
        logger.info(f"Harvested {reward} raw reward units for {user} at {after.last_harvest_time}")
        return HarvestResult(submission, reward, after)

    async def get_staking_info(self, owner: Pubkey) -> StakingInfo:
        state = await self.get_program_state()
        snapshot = await self.get_stake_snapshot(owner)
        rate = rate_per_second(state.stake_rate_basis_points)
        if snapshot is None:
            return StakingInfo(
                owner=owner,
                staked_raw=0,
                start_timestamp=0,
                last_harvest_time=0,
                total_harvested_raw=0,
                pending_reward_raw=0,
                harvest_threshold_raw=state.harvest_threshold_raw,
                rate_per_second=rate,
                can_harvest=False,
                decimals=self.decimals,
            )
        now = self._now()
        pending = pending_reward(snapshot, rate, now)
        return StakingInfo(
            owner=owner,
            staked_raw=snapshot.staked_amount_raw,
            start_timestamp=snapshot.start_timestamp,
            last_harvest_time=snapshot.last_harvest_time,
            total_harvested_raw=snapshot.total_harvested_raw,
            pending_reward_raw=pending,
            harvest_threshold_raw=state.harvest_threshold_raw,
            rate_per_second=rate,
            can_harvest=pending >= state.harvest_threshold_raw,
            decimals=self.decimals,
        )

    async def get_rate_summary(self) -> dict:
        """Rate parameters with linear display projections."""
        state = await self.get_program_state()
        rate = rate_per_second(state.stake_rate_basis_points)
        return {
            "stake_rate_basis_points": state.stake_rate_basis_points,
            "harvest_threshold_raw": state.harvest_threshold_raw,
            **projected_yields(rate),
        }

    # ==========================================================================
    # Admin operations
    # ==========================================================================

    async def initialize(self, admin_signer, rate_basis_points: int, harvest_threshold_raw: int) -> SubmissionResult:
        request = InitializeStakingRequest(
            stake_mint=self.stake_mint,
            reward_mint=self.reward_mint,
            rate_basis_points=rate_basis_points,
            harvest_threshold=harvest_threshold_raw,
        )
        instruction = self.encoder.encode(request, {
            "admin": admin_signer.public_key,
            "program_state": self.program_state,
        })
        return await self._submit(admin_signer, [instruction], "initialize staking")

    async def update_parameters(self, admin_signer, rate_basis_points: int, harvest_threshold_raw: int) -> SubmissionResult:
        request = UpdateParametersRequest(
            rate_basis_points=rate_basis_points,
            harvest_threshold=harvest_threshold_raw,
        )
        instruction = self.encoder.encode(request, {
            "admin": admin_signer.public_key,
            "program_state": self.program_state,
        })
        state = await self.get_program_state()
        if state.admin is not None and state.admin != admin_signer.public_key:
            raise AuthorizationError(
                f"{admin_signer.public_key} is not the staking program admin",
                {"admin": str(state.admin)},
            )
        return await self._submit(admin_signer, [instruction], "update staking parameters")
