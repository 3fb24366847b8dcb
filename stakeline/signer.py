"""
Signing capabilities.

A signer is anything holding a public key that supports at least one of:

- ``CanSendTransaction.send_transaction(tx, client)``: signs and broadcasts
  through a connection the pipeline hands it;
- ``CanSignTransaction.sign_transaction(tx)``: returns a signed copy which
  the pipeline broadcasts itself;
- ``CanSignAndSend.sign_and_send_transaction(tx)``: signs and broadcasts
  over its own transport.

``select_capability`` probes the variants in that order.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from stakeline.errors import AuthorizationError


class SignerCapability(str, Enum):
    SEND = "send_transaction"
    SIGN = "sign_transaction"
    SIGN_AND_SEND = "sign_and_send_transaction"


class Signer(ABC):
    @property
    @abstractmethod
    def public_key(self) -> Pubkey:
        ...


class CanSendTransaction(Signer):
    @abstractmethod
    async def send_transaction(self, transaction: Transaction, client: Any) -> Signature:
        ...


class CanSignTransaction(Signer):
    @abstractmethod
    async def sign_transaction(self, transaction: Transaction) -> Transaction:
        ...


class CanSignAndSend(Signer):
    @abstractmethod
    async def sign_and_send_transaction(self, transaction: Transaction) -> Signature:
        ...


def select_capability(signer: Any) -> SignerCapability:
    """First capability ``signer`` declares, in send, sign, sign-and-send order."""
    if isinstance(signer, CanSendTransaction):
        return SignerCapability.SEND
    if isinstance(signer, CanSignTransaction):
        return SignerCapability.SIGN
    if isinstance(signer, CanSignAndSend):
        return SignerCapability.SIGN_AND_SEND
    raise AuthorizationError(
        f"{type(signer).__name__} exposes no signing capability",
        {"signer": type(signer).__name__},
    )


class KeypairSigner(CanSignTransaction):
    """Local keypair signer, used for the refund reserve and scripts."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def keypair(self) -> Keypair:
        return self._keypair

    async def sign_transaction(self, transaction: Transaction) -> Transaction:
        message = transaction.message
        return Transaction([self._keypair], message, message.recent_blockhash)

    def __repr__(self) -> str:
        return f"KeypairSigner({self.public_key})"
