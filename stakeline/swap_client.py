"""Multi-hub swap program client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from solders.pubkey import Pubkey
from spl.token.instructions import create_associated_token_account

from stakeline.errors import ValidationError
from stakeline.instruction_encoder import (
    MULTIHUB_SWAP_V4,
    CloseProgramRequest,
    InitializeSwapRequest,
    InstructionEncoder,
    SwapRequest,
)
from stakeline.pda import associated_token_address, find_program_authority, find_swap_state
from stakeline.transaction_pipeline import SubmissionResult, TransactionPipeline, TransactionRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapRates:
    """Fee and reward split in basis points of the input amount."""
    lp_contribution_rate: int = 2000
    admin_fee_rate: int = 10
    cashback_rate: int = 500
    swap_fee_rate: int = 30
    referral_rate: int = 50


class SwapClient:
    def __init__(self, pipeline: TransactionPipeline, program_id: Pubkey, stake_mint: Pubkey, reward_mint: Pubkey):
        self.pipeline = pipeline
        self.rpc = pipeline.rpc
        self.program_id = program_id
        self.stake_mint = stake_mint
        self.reward_mint = reward_mint
        self.encoder = InstructionEncoder(MULTIHUB_SWAP_V4, program_id)
        self.program_state, _ = find_swap_state(program_id)
        self.program_authority, _ = find_program_authority(program_id)

    @classmethod
    def from_config(cls, pipeline: TransactionPipeline, swap_config, staking_config) -> "SwapClient":
        return cls(
            pipeline,
            Pubkey.from_string(swap_config.program_id),
            Pubkey.from_string(staking_config.stake_mint),
            Pubkey.from_string(staking_config.reward_mint),
        )

    async def _create_missing(self, owner: Pubkey, mints: List[Pubkey]) -> List:
        instructions = []
        for mint in mints:
            address = associated_token_address(owner, mint)
            if await self.rpc.get_account_info(address) is None:
                logger.info(f"Creating token account {address} for mint {mint}")
                instructions.append(create_associated_token_account(owner, owner, mint))
        return instructions

    async def swap(
        self,
        signer,
        amount_in: int,
        min_amount_out: int,
        from_mint: Pubkey,
        to_mint: Pubkey,
    ) -> SubmissionResult:
        if from_mint == to_mint:
            raise ValidationError("Cannot swap a token for itself", {"mint": str(from_mint)})

        user = signer.public_key
        authority = self.program_authority
        swap_ix = self.encoder.encode(
            SwapRequest(amount_in=amount_in, min_amount_out=min_amount_out),
            {
                "user": user,
                "program_state": self.program_state,
                "program_authority": authority,
                "user_token_from": associated_token_address(user, from_mint),
                "user_token_to": associated_token_address(user, to_mint),
                "user_reward_token": associated_token_address(user, self.reward_mint),
                "program_token_from": associated_token_address(authority, from_mint),
                "program_token_to": associated_token_address(authority, to_mint),
                "program_reward_token": associated_token_address(authority, self.reward_mint),
                "token_from_mint": from_mint,
                "token_to_mint": to_mint,
                "reward_mint": self.reward_mint,
            },
        )

        mints = [to_mint] if to_mint == self.reward_mint else [to_mint, self.reward_mint]
        instructions = await self._create_missing(user, mints)
        instructions.append(swap_ix)
        request = TransactionRequest.of(instructions, user)
        return await self.pipeline.submit(signer, request, "swap")

    async def initialize(self, admin_signer, rates: SwapRates = SwapRates()) -> SubmissionResult:
        admin = admin_signer.public_key
        instruction = self.encoder.encode(
            InitializeSwapRequest(
                admin=admin,
                stake_mint=self.stake_mint,
                reward_mint=self.reward_mint,
                lp_contribution_rate=rates.lp_contribution_rate,
                admin_fee_rate=rates.admin_fee_rate,
                cashback_rate=rates.cashback_rate,
                swap_fee_rate=rates.swap_fee_rate,
                referral_rate=rates.referral_rate,
            ),
            {
                "payer": admin,
                "program_state": self.program_state,
                "program_authority": self.program_authority,
            },
        )
        request = TransactionRequest.of([instruction], admin)
        return await self.pipeline.submit(admin_signer, request, "initialize swap")

    async def close_program(self, admin_signer) -> SubmissionResult:
        admin = admin_signer.public_key
        instruction = self.encoder.encode(CloseProgramRequest(), {
            "admin": admin,
            "program_state": self.program_state,
            "program_authority": self.program_authority,
        })
        request = TransactionRequest.of([instruction], admin)
        return await self.pipeline.submit(admin_signer, request, "close swap program")
