"""
Table-driven instruction encoding for the staking and multi-hub swap programs.

Each protocol version is one ``ProtocolSchema``: per instruction, the
discriminator byte, the fixed-width little-endian fields that follow it and
the ordered account list the program indexes into. Changing the program ABI
means editing these tables, not the encoder.

Usage:
    encoder = InstructionEncoder(STAKING_V1, program_id)
    encoded = encoder.encode(StakeRequest(amount=1_000_000_000), {
        "user": owner, "user_token": user_ata, ...
    })
    ix = encoded.to_instruction()
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import CLOCK, RENT
from spl.token.constants import TOKEN_PROGRAM_ID

from stakeline.errors import EncodingError, ValidationError
from stakeline.reward_engine import MAX_RATE_BASIS_POINTS

MAX_SWAP_RATE_BASIS_POINTS = 10_000


class FieldKind(Enum):
    U8 = ("<B", 0, 2**8 - 1)
    U64 = ("<Q", 0, 2**64 - 1)
    I64 = ("<q", -(2**63), 2**63 - 1)
    PUBKEY = (None, None, None)

    @property
    def size(self) -> int:
        fmt = self.value[0]
        return 32 if fmt is None else struct.calcsize(fmt)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind
    minimum: Optional[int] = None
    maximum: Optional[int] = None


@dataclass(frozen=True)
class AccountSpec:
    role: str
    is_signer: bool = False
    is_writable: bool = False
    fixed: Optional[Pubkey] = None


# ==============================================================================
# Typed requests
# ==============================================================================

@dataclass(frozen=True)
class InitializeStakingRequest:
    stake_mint: Pubkey
    reward_mint: Pubkey
    rate_basis_points: int
    harvest_threshold: int


@dataclass(frozen=True)
class StakeRequest:
    amount: int


@dataclass(frozen=True)
class UnstakeRequest:
    amount: int


@dataclass(frozen=True)
class HarvestRequest:
    pass


@dataclass(frozen=True)
class UpdateParametersRequest:
    rate_basis_points: int
    harvest_threshold: int


@dataclass(frozen=True)
class InitializeSwapRequest:
    admin: Pubkey
    stake_mint: Pubkey
    reward_mint: Pubkey
    lp_contribution_rate: int
    admin_fee_rate: int
    cashback_rate: int
    swap_fee_rate: int
    referral_rate: int


@dataclass(frozen=True)
class SwapRequest:
    amount_in: int
    min_amount_out: int


@dataclass(frozen=True)
class CloseProgramRequest:
    pass


@dataclass(frozen=True)
class InstructionSchema:
    name: str
    discriminator: int
    request_type: Type
    fields: Tuple[FieldSpec, ...]
    accounts: Tuple[AccountSpec, ...]

    @property
    def data_size(self) -> int:
        return 1 + sum(f.kind.size for f in self.fields)

    @property
    def roles(self) -> Tuple[str, ...]:
        return tuple(a.role for a in self.accounts)


class ProtocolSchema:
    def __init__(self, version: str, instructions: Tuple[InstructionSchema, ...]):
        self.version = version
        self.instructions = instructions
        self._by_type: Dict[Type, InstructionSchema] = {}
        self._by_discriminator: Dict[int, InstructionSchema] = {}
        for schema in instructions:
            if schema.discriminator in self._by_discriminator:
                raise ValueError(f"{version}: duplicate discriminator {schema.discriminator}")
            self._by_type[schema.request_type] = schema
            self._by_discriminator[schema.discriminator] = schema

    def for_request(self, request: Any) -> InstructionSchema:
        schema = self._by_type.get(type(request))
        if schema is None:
            raise ValidationError(f"{self.version} has no instruction for {type(request).__name__}")
        return schema

    def for_discriminator(self, discriminator: int) -> InstructionSchema:
        schema = self._by_discriminator.get(discriminator)
        if schema is None:
            raise EncodingError(f"{self.version}: unknown discriminator {discriminator}", "discriminator", discriminator)
        return schema

    def __repr__(self) -> str:
        return f"ProtocolSchema({self.version!r})"


_AMOUNT = FieldSpec("amount", FieldKind.U64, minimum=1)
_STAKE_RATE = FieldSpec("rate_basis_points", FieldKind.U64, maximum=MAX_RATE_BASIS_POINTS)
_THRESHOLD = FieldSpec("harvest_threshold", FieldKind.U64)


def _swap_rate(name: str) -> FieldSpec:
    return FieldSpec(name, FieldKind.U64, maximum=MAX_SWAP_RATE_BASIS_POINTS)


STAKING_V1 = ProtocolSchema("staking-v1", (
    InstructionSchema(
        "initialize", 0, InitializeStakingRequest,
        fields=(
            FieldSpec("stake_mint", FieldKind.PUBKEY),
            FieldSpec("reward_mint", FieldKind.PUBKEY),
            _STAKE_RATE,
            _THRESHOLD,
        ),
        accounts=(
            AccountSpec("admin", is_signer=True, is_writable=True),
            AccountSpec("program_state", is_writable=True),
            AccountSpec("system_program", fixed=SYSTEM_PROGRAM_ID),
        ),
    ),
    InstructionSchema(
        "stake", 1, StakeRequest,
        fields=(_AMOUNT,),
        accounts=(
            AccountSpec("user", is_signer=True, is_writable=True),
            AccountSpec("user_token", is_writable=True),
            AccountSpec("program_token", is_writable=True),
            AccountSpec("staking_account", is_writable=True),
            AccountSpec("program_state"),
            AccountSpec("token_program", fixed=TOKEN_PROGRAM_ID),
            AccountSpec("clock", fixed=CLOCK),
            AccountSpec("system_program", fixed=SYSTEM_PROGRAM_ID),
        ),
    ),
    InstructionSchema(
        "unstake", 2, UnstakeRequest,
        fields=(_AMOUNT,),
        accounts=(
            AccountSpec("user", is_signer=True, is_writable=True),
            AccountSpec("user_token", is_writable=True),
            AccountSpec("program_token", is_writable=True),
            AccountSpec("staking_account", is_writable=True),
            AccountSpec("program_state"),
            AccountSpec("token_program", fixed=TOKEN_PROGRAM_ID),
            AccountSpec("program_authority"),
        ),
    ),
    InstructionSchema(
        "harvest", 3, HarvestRequest,
        fields=(),
        accounts=(
            AccountSpec("user", is_signer=True, is_writable=True),
            AccountSpec("user_reward_token", is_writable=True),
            AccountSpec("program_reward_token", is_writable=True),
            AccountSpec("staking_account", is_writable=True),
            AccountSpec("program_state"),
            AccountSpec("token_program", fixed=TOKEN_PROGRAM_ID),
            AccountSpec("program_authority"),
            AccountSpec("clock", fixed=CLOCK),
        ),
    ),
    InstructionSchema(
        "update_parameters", 4, UpdateParametersRequest,
        fields=(_STAKE_RATE, _THRESHOLD),
        accounts=(
            AccountSpec("admin", is_signer=True, is_writable=True),
            AccountSpec("program_state", is_writable=True),
        ),
    ),
))

MULTIHUB_SWAP_V4 = ProtocolSchema("multihub-swap-v4", (
    InstructionSchema(
        "initialize", 0, InitializeSwapRequest,
        fields=(
            FieldSpec("admin", FieldKind.PUBKEY),
            FieldSpec("stake_mint", FieldKind.PUBKEY),
            FieldSpec("reward_mint", FieldKind.PUBKEY),
            _swap_rate("lp_contribution_rate"),
            _swap_rate("admin_fee_rate"),
            _swap_rate("cashback_rate"),
            _swap_rate("swap_fee_rate"),
            _swap_rate("referral_rate"),
        ),
        accounts=(
            AccountSpec("payer", is_signer=True, is_writable=True),
            AccountSpec("program_state", is_writable=True),
            AccountSpec("program_authority"),
            AccountSpec("system_program", fixed=SYSTEM_PROGRAM_ID),
            AccountSpec("rent", fixed=RENT),
        ),
    ),
    InstructionSchema(
        "swap", 1, SwapRequest,
        fields=(
            FieldSpec("amount_in", FieldKind.U64, minimum=1),
            FieldSpec("min_amount_out", FieldKind.U64),
        ),
        accounts=(
            AccountSpec("user", is_signer=True, is_writable=True),
            AccountSpec("program_state"),
            AccountSpec("program_authority"),
            AccountSpec("user_token_from", is_writable=True),
            AccountSpec("user_token_to", is_writable=True),
            AccountSpec("user_reward_token", is_writable=True),
            AccountSpec("program_token_from", is_writable=True),
            AccountSpec("program_token_to", is_writable=True),
            AccountSpec("program_reward_token", is_writable=True),
            AccountSpec("token_from_mint"),
            AccountSpec("token_to_mint"),
            AccountSpec("reward_mint"),
            AccountSpec("token_program", fixed=TOKEN_PROGRAM_ID),
            AccountSpec("system_program", fixed=SYSTEM_PROGRAM_ID),
            AccountSpec("rent", fixed=RENT),
        ),
    ),
    InstructionSchema(
        "close_program", 2, CloseProgramRequest,
        fields=(),
        accounts=(
            AccountSpec("admin", is_signer=True, is_writable=True),
            AccountSpec("program_state", is_writable=True),
            AccountSpec("program_authority"),
            AccountSpec("system_program", fixed=SYSTEM_PROGRAM_ID),
        ),
    ),
))

SCHEMAS: Dict[str, ProtocolSchema] = {
    STAKING_V1.version: STAKING_V1,
    MULTIHUB_SWAP_V4.version: MULTIHUB_SWAP_V4,
}


@dataclass(frozen=True)
class AccountRef:
    address: Pubkey
    is_signer: bool
    is_writable: bool
    role: str = ""

    def to_meta(self) -> AccountMeta:
        return AccountMeta(self.address, self.is_signer, self.is_writable)


@dataclass(frozen=True)
class EncodedInstruction:
    program_id: Pubkey
    name: str
    data: bytes
    accounts: Tuple[AccountRef, ...]

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.data, [a.to_meta() for a in self.accounts])

    @property
    def signers(self) -> Tuple[Pubkey, ...]:
        return tuple(a.address for a in self.accounts if a.is_signer)


def _encode_field(spec: FieldSpec, value: Any) -> bytes:
    if spec.kind is FieldKind.PUBKEY:
        if not isinstance(value, Pubkey):
            raise EncodingError(f"{spec.name} must be a Pubkey, got {type(value).__name__}", spec.name, value)
        return bytes(value)

    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{spec.name} must be an integer, got {value!r}", spec.name, value)
    fmt, low, high = spec.kind.value
    if spec.minimum is not None:
        low = max(low, spec.minimum)
    if spec.maximum is not None:
        high = min(high, spec.maximum)
    if not low <= value <= high:
        raise EncodingError(f"{spec.name}={value} is outside [{low}, {high}]", spec.name, value)
    return struct.pack(fmt, value)


def _decode_field(spec: FieldSpec, data: bytes, offset: int) -> Any:
    if spec.kind is FieldKind.PUBKEY:
        return Pubkey.from_bytes(data[offset:offset + 32])
    return struct.unpack_from(spec.kind.value[0], data, offset)[0]


class InstructionEncoder:
    """Encodes typed requests for one program against one protocol schema."""

    def __init__(self, protocol, program_id: Pubkey):
        self.protocol: ProtocolSchema = SCHEMAS[protocol] if isinstance(protocol, str) else protocol
        self.program_id = program_id

    def encode_data(self, request: Any) -> bytes:
        schema = self.protocol.for_request(request)
        parts = [bytes([schema.discriminator])]
        parts.extend(_encode_field(spec, getattr(request, spec.name)) for spec in schema.fields)
        return b"".join(parts)

    def resolve_accounts(self, schema: InstructionSchema, accounts: Mapping[str, Pubkey]) -> Tuple[AccountRef, ...]:
        unknown = set(accounts) - set(schema.roles)
        if unknown:
            raise ValidationError(
                f"{schema.name}: unexpected account role(s) {', '.join(sorted(unknown))}",
                {"instruction": schema.name},
            )
        refs = []
        for spec in schema.accounts:
            address = accounts.get(spec.role, spec.fixed)
            if address is None:
                raise ValidationError(
                    f"{schema.name}: missing account '{spec.role}'",
                    {"instruction": schema.name, "role": spec.role},
                )
            if not isinstance(address, Pubkey):
                raise ValidationError(
                    f"{schema.name}: account '{spec.role}' is not a Pubkey",
                    {"instruction": schema.name, "role": spec.role},
                )
            refs.append(AccountRef(address, spec.is_signer, spec.is_writable, spec.role))
        return tuple(refs)

    def encode(self, request: Any, accounts: Mapping[str, Pubkey]) -> EncodedInstruction:
        schema = self.protocol.for_request(request)
        return EncodedInstruction(
            program_id=self.program_id,
            name=schema.name,
            data=self.encode_data(request),
            accounts=self.resolve_accounts(schema, accounts),
        )

    def decode(self, data: bytes) -> Any:
        """Typed request from instruction data."""
        if not data:
            raise EncodingError("Empty instruction data", "discriminator", None)
        schema = self.protocol.for_discriminator(data[0])
        if len(data) != schema.data_size:
            raise EncodingError(
                f"{schema.name} data is {len(data)} bytes, expected {schema.data_size}",
                "data", len(data),
            )
        values = {}
        offset = 1
        for spec in schema.fields:
            values[spec.name] = _decode_field(spec, data, offset)
            offset += spec.kind.size
        return schema.request_type(**values)

