"""Keypair loading for the refund reserve and local signers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair

from stakeline.errors import ConfigurationError
from stakeline.signer import KeypairSigner

logger = logging.getLogger(__name__)


def _load_keypair_from_file(path: Path) -> Keypair:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read keypair file {path}: {exc}") from exc
    if not isinstance(data, list):
        raise ConfigurationError(f"Keypair file {path} must hold a JSON byte array")
    try:
        return Keypair.from_bytes(bytes(data))
    except ValueError as exc:
        raise ConfigurationError(f"Keypair file {path} is not a valid keypair: {exc}") from exc


def _load_keypair_from_base58(key: str) -> Keypair:
    try:
        return Keypair.from_bytes(base58.b58decode(key.strip()))
    except ValueError as exc:
        raise ConfigurationError(f"Base58 key is not a valid keypair: {exc}") from exc


def load_keypair(path: Optional[str] = None, base58_key: Optional[str] = None) -> Keypair:
    """
    Load a keypair from a JSON byte-array file or a base58 secret.

    The file wins when both are given. Raises ConfigurationError when
    neither is available; a key is never generated here.
    """
    if path:
        resolved = Path(path).expanduser()
        if resolved.exists():
            return _load_keypair_from_file(resolved)
        if not base58_key:
            raise ConfigurationError(f"Keypair file {resolved} does not exist")
        logger.warning(f"Keypair file {resolved} missing, using base58 key")

    if base58_key:
        return _load_keypair_from_base58(base58_key)

    raise ConfigurationError("No keypair configured")


def load_reserve_signer(compensation_config) -> KeypairSigner:
    """Signer for refunds, from ``CompensationConfig``."""
    if not compensation_config.has_credential:
        raise ConfigurationError(
            "Compensation is enabled but no reserve keypair is configured "
            "(set compensation.reserve_keypair_path or STAKELINE_RESERVE_KEY)"
        )
    keypair = load_keypair(compensation_config.reserve_keypair_path, compensation_config.reserve_key)
    logger.info(f"Loaded refund reserve {keypair.pubkey()}")
    return KeypairSigner(keypair)
