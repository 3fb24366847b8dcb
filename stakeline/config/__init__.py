"""
Configuration module for stakeline.

Addresses, endpoints and timing are supplied from config/stakeline.json and
the environment; nothing here is generated at runtime.
"""

from stakeline.config.loader import (
    CompensationConfig,
    PipelineConfig,
    RpcConfig,
    RpcEndpointConfig,
    StakelineConfig,
    StakingConfig,
    SwapConfig,
    load_config,
)

__all__ = [
    "CompensationConfig",
    "PipelineConfig",
    "RpcConfig",
    "RpcEndpointConfig",
    "StakelineConfig",
    "StakingConfig",
    "SwapConfig",
    "load_config",
]
