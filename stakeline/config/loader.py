"""
stakeline Configuration Loader

Consolidates configuration loading into one module:
- Environment variables (.env plus the real environment)
- JSON config file (config/stakeline.json or $STAKELINE_CONFIG)
- Validation and defaults

Usage:
    from stakeline.config import load_config

    cfg = load_config()
    pool = ConnectionPool(cfg.rpc.descriptors(), max_retries=cfg.rpc.max_retries)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from stakeline.connection_pool import EndpointDescriptor
from stakeline.errors import ConfigurationError

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = ROOT / ".env"
DEFAULT_CONFIG_FILE = ROOT / "config" / "stakeline.json"

PUBLIC_DEVNET_URL = "https://api.devnet.solana.com"
DEFAULT_COMMITMENTS = ["confirmed", "processed"]
VALID_COMMITMENTS = {"processed", "confirmed", "finalized"}

# Devnet deployment of the staking and multi-hub swap programs
DEFAULT_STAKING_PROGRAM_ID = "SMddVoXz2hF9jjecS5A1gZLG8TJHo34MJZuexZ8kVjE"
DEFAULT_SWAP_PROGRAM_ID = "Cohae9agySEgC9gyJL1QHCJWw4q58R7Wshr3rpPJHU7L"
DEFAULT_STAKE_MINT = "9KxQHJcBxp29AjGTAqF3LCFzodSpkuv986wsSEwQi6Cw"
DEFAULT_REWARD_MINT = "2SWCnck3vLAVKaLkAjVtNnsVJVGYmGzyNVnte48SQRop"

T = TypeVar("T")


def _load_env_file(path: Path) -> Dict[str, str]:
    """Load environment variables from .env file."""
    env_vars = {}

    if not path.exists():
        return env_vars

    try:
        content = path.read_text(encoding='utf-8')
    except UnicodeDecodeError:
        content = path.read_text(encoding='latin-1')

    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue

        if '=' not in line:
            continue

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        # Remove quotes
        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]

        env_vars[key] = value

    return env_vars


def _get_env(env: Mapping[str, str], key: str, default: T = None, cast: Type[T] = str) -> T:
    """Get environment variable with type casting."""
    value = env.get(key)

    if value is None or value == "":
        return default

    if cast == bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    if cast == int:
        try:
            return int(value)
        except ValueError:
            return default

    if cast == float:
        try:
            return float(value)
        except ValueError:
            return default

    if cast == list:
        return [v.strip() for v in value.split(',') if v.strip()]

    return value


def _substitute_env(value: str, env: Mapping[str, str]) -> Optional[str]:
    """Expand one ``${NAME}`` placeholder; None when the variable is unset."""
    if "${" not in value:
        return value
    start = value.find("${")
    end = value.find("}", start + 2)
    if start == -1 or end == -1:
        return value
    env_name = value[start + 2 : end]
    env_value = env.get(env_name)
    if not env_value:
        return None
    return value.replace(f"${{{env_name}}}", env_value)


@dataclass
class RpcEndpointConfig:
    name: str
    url: str
    timeout_ms: int = 30000


@dataclass
class RpcConfig:
    """RPC endpoint pool configuration."""
    endpoints: List[RpcEndpointConfig] = field(default_factory=list)
    commitments: List[str] = field(default_factory=lambda: list(DEFAULT_COMMITMENTS))
    max_retries: int = 5
    initial_delay_ms: int = 250

    def descriptors(self) -> List[EndpointDescriptor]:
        """Every endpoint paired with every commitment level, primary first."""
        descriptors = [
            EndpointDescriptor(
                url=endpoint.url,
                commitment=commitment,
                name=endpoint.name,
                timeout_ms=endpoint.timeout_ms,
            )
            for endpoint in self.endpoints
            for commitment in self.commitments
        ]
        if not descriptors:
            raise ConfigurationError("No RPC endpoints configured")
        return descriptors

    @classmethod
    def from_sources(cls, payload: Dict[str, Any], env: Mapping[str, str]) -> 'RpcConfig':
        rpc_cfg = payload.get("rpc", {}) or {}
        endpoints: List[RpcEndpointConfig] = []

        env_url = _get_env(env, "SOLANA_RPC_URL")
        if env_url:
            endpoints.append(RpcEndpointConfig(name="env", url=env_url))

        primary = rpc_cfg.get("primary", {}) or {}
        if primary.get("url"):
            url = _substitute_env(str(primary["url"]), env)
            if url:
                endpoints.append(
                    RpcEndpointConfig(
                        name=str(primary.get("name", "primary")),
                        url=url,
                        timeout_ms=int(primary.get("timeout_ms", 30000)),
                    )
                )
            else:
                logger.warning("Primary RPC endpoint skipped: environment variable not set")

        for fallback in rpc_cfg.get("fallback", []) or []:
            url = _substitute_env(str(fallback.get("url", "")), env)
            if not url:
                continue
            endpoints.append(
                RpcEndpointConfig(
                    name=str(fallback.get("name", "fallback")),
                    url=url,
                    timeout_ms=int(fallback.get("timeout_ms", 30000)),
                )
            )

        if not endpoints:
            logger.warning("No valid RPC endpoints configured, using public devnet endpoint")
            endpoints.append(RpcEndpointConfig(name="public_devnet", url=PUBLIC_DEVNET_URL))

        commitments = rpc_cfg.get("commitments") or _get_env(env, "STAKELINE_COMMITMENTS", None, list) or list(DEFAULT_COMMITMENTS)
        unknown = [c for c in commitments if c not in VALID_COMMITMENTS]
        if unknown:
            raise ConfigurationError(f"Unknown commitment level(s): {', '.join(unknown)}")

        pool_cfg = payload.get("pool", {}) or {}
        return cls(
            endpoints=endpoints,
            commitments=list(commitments),
            max_retries=_get_env(env, "STAKELINE_MAX_RETRIES", int(pool_cfg.get("max_retries", 5)), int),
            initial_delay_ms=_get_env(env, "STAKELINE_INITIAL_DELAY_MS", int(pool_cfg.get("initial_delay_ms", 250)), int),
        )


@dataclass
class StakingConfig:
    """Staking program addresses and token settings."""
    program_id: str = DEFAULT_STAKING_PROGRAM_ID
    stake_mint: str = DEFAULT_STAKE_MINT
    reward_mint: str = DEFAULT_REWARD_MINT
    decimals: int = 9

    @classmethod
    def from_sources(cls, payload: Dict[str, Any], env: Mapping[str, str]) -> 'StakingConfig':
        section = payload.get("staking", {}) or {}
        return cls(
            program_id=_get_env(env, "STAKELINE_STAKING_PROGRAM_ID", section.get("program_id", DEFAULT_STAKING_PROGRAM_ID)),
            stake_mint=_get_env(env, "STAKELINE_STAKE_MINT", section.get("stake_mint", DEFAULT_STAKE_MINT)),
            reward_mint=_get_env(env, "STAKELINE_REWARD_MINT", section.get("reward_mint", DEFAULT_REWARD_MINT)),
            decimals=int(section.get("decimals", 9)),
        )


@dataclass
class SwapConfig:
    """Multi-hub swap program settings."""
    program_id: str = DEFAULT_SWAP_PROGRAM_ID

    @classmethod
    def from_sources(cls, payload: Dict[str, Any], env: Mapping[str, str]) -> 'SwapConfig':
        section = payload.get("swap", {}) or {}
        return cls(
            program_id=_get_env(env, "STAKELINE_SWAP_PROGRAM_ID", section.get("program_id", DEFAULT_SWAP_PROGRAM_ID)),
        )


@dataclass
class PipelineConfig:
    """Submission pipeline timing."""
    confirm_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    max_blockhash_refreshes: int = 1
    simulate_first: bool = True

    @classmethod
    def from_sources(cls, payload: Dict[str, Any], env: Mapping[str, str]) -> 'PipelineConfig':
        section = payload.get("pipeline", {}) or {}
        return cls(
            confirm_timeout_seconds=_get_env(env, "STAKELINE_CONFIRM_TIMEOUT", float(section.get("confirm_timeout_seconds", 60.0)), float),
            poll_interval_seconds=float(section.get("poll_interval_seconds", 0.5)),
            max_blockhash_refreshes=int(section.get("max_blockhash_refreshes", 1)),
            simulate_first=bool(section.get("simulate_first", True)),
        )


@dataclass
class CompensationConfig:
    """Where the funded refund reserve credential lives."""
    enabled: bool = True
    reserve_keypair_path: str = ""
    reserve_key: str = ""

    @property
    def has_credential(self) -> bool:
        return bool(self.reserve_keypair_path or self.reserve_key)

    @classmethod
    def from_sources(cls, payload: Dict[str, Any], env: Mapping[str, str]) -> 'CompensationConfig':
        section = payload.get("compensation", {}) or {}
        return cls(
            enabled=_get_env(env, "STAKELINE_COMPENSATION_ENABLED", bool(section.get("enabled", True)), bool),
            reserve_keypair_path=_get_env(env, "STAKELINE_RESERVE_KEYPAIR_PATH", section.get("reserve_keypair_path", "")),
            reserve_key=_get_env(env, "STAKELINE_RESERVE_KEY", ""),
        )


@dataclass
class StakelineConfig:
    rpc: RpcConfig = field(default_factory=RpcConfig)
    staking: StakingConfig = field(default_factory=StakingConfig)
    swap: SwapConfig = field(default_factory=SwapConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    compensation: CompensationConfig = field(default_factory=CompensationConfig)
    log_level: str = "INFO"


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.info(f"Config file {path} not found, using defaults")
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    return payload


def load_config(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> StakelineConfig:
    """Load configuration from the JSON file and environment.

    Real environment variables win over values from the ``.env`` file.
    """
    if env is None:
        merged = _load_env_file(ENV_FILE)
        merged.update(os.environ)
        env = merged

    config_path = Path(path) if path else Path(_get_env(env, "STAKELINE_CONFIG", str(DEFAULT_CONFIG_FILE)))
    payload = _read_config_file(config_path)

    config = StakelineConfig(
        rpc=RpcConfig.from_sources(payload, env),
        staking=StakingConfig.from_sources(payload, env),
        swap=SwapConfig.from_sources(payload, env),
        pipeline=PipelineConfig.from_sources(payload, env),
        compensation=CompensationConfig.from_sources(payload, env),
        log_level=_get_env(env, "STAKELINE_LOG_LEVEL", payload.get("log_level", "INFO")),
    )
    logger.info(
        f"Loaded config: {len(config.rpc.endpoints)} endpoint(s) x "
        f"{len(config.rpc.commitments)} commitment level(s)"
    )
    return config
