"""
Shared fixtures: a bridge wired to the in-process engine simulator.

Configs are built explicitly so that environment variables on the test
machine never change behaviour.
"""

import pytest

from forgebridge.bridge import ForgeBridge
from forgebridge.config import (
    BridgeConfig,
    ContextConfig,
    ForgeConfig,
    LLMConfig,
    LoopConfig,
    SecurityConfig,
)
from forgebridge.engine_simulator import EngineSimulator


@pytest.fixture
def forge_config() -> ForgeConfig:
    return ForgeConfig(
        llm=LLMConfig(base_url="http://llm.test/v1", api_key="test-key", model="test-model"),
        bridge=BridgeConfig(dispatch_timeout=2.0, reconnect_delay=0.05),
        loop=LoopConfig(max_iterations=10),
        security=SecurityConfig(),
        context=ContextConfig(),
    )


@pytest.fixture
def bridge(forge_config: ForgeConfig) -> ForgeBridge:
    return ForgeBridge.simulated(config=forge_config)


@pytest.fixture
def simulator(bridge: ForgeBridge) -> EngineSimulator:
    return bridge.channel


@pytest.fixture
def store(bridge: ForgeBridge):
    return bridge.store
