"""Program-derived and associated token addresses."""

from __future__ import annotations

from typing import Tuple

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

STAKING_STATE_SEED = b"program_state"
STAKING_ACCOUNT_SEED = b"staking_account"
AUTHORITY_SEED = b"authority"
SWAP_STATE_SEED = b"state"


def find_staking_program_state(program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([STAKING_STATE_SEED], program_id)


def find_staking_account(owner: Pubkey, program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([STAKING_ACCOUNT_SEED, bytes(owner)], program_id)


def find_program_authority(program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Signing authority PDA; both programs use the same seed."""
    return Pubkey.find_program_address([AUTHORITY_SEED], program_id)


def find_swap_state(program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([SWAP_STATE_SEED], program_id)


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, mint)
