"""
Tests for environment-driven configuration.
"""

import pytest

from forgebridge.config import (
    ApprovalPolicy,
    BridgeConfig,
    ContextConfig,
    ForgeConfig,
    LoopConfig,
    ReconcilePolicy,
    SecurityConfig,
)


class TestFromEnv:

    def test_defaults(self, monkeypatch) -> None:
        for name in ("FORGE_DISPATCH_TIMEOUT", "FORGE_RECONCILE_POLICY", "FORGE_APPROVAL_POLICY"):
            monkeypatch.delenv(name, raising=False)
        config = ForgeConfig.from_env()
        assert config.bridge.dispatch_timeout == 60.0
        assert config.bridge.reconcile_policy is ReconcilePolicy.REVERT
        assert config.security.approval_policy is ApprovalPolicy.BLOCK_CRITICAL

    def test_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("FORGE_ENGINE_URL", "ws://editor:7000")
        monkeypatch.setenv("FORGE_RECONCILE_POLICY", "await_push")
        monkeypatch.setenv("FORGE_APPROVAL_POLICY", "advisory")
        monkeypatch.setenv("FORGE_CRITICAL_FINDINGS", "disallowed_api, prompt_injection")
        monkeypatch.setenv("AGENT_APPROVAL_MODE", "yes")
        monkeypatch.setenv("AGENT_MAX_ITERATIONS", "3")

        bridge = BridgeConfig.from_env()
        security = SecurityConfig.from_env()
        loop = LoopConfig.from_env()

        assert bridge.engine_url == "ws://editor:7000"
        assert bridge.reconcile_policy is ReconcilePolicy.AWAIT_PUSH
        assert security.approval_policy is ApprovalPolicy.ADVISORY
        assert security.critical_kinds == frozenset({"disallowed_api", "prompt_injection"})
        assert loop.approval_mode is True
        assert loop.max_iterations == 3

    def test_unknown_policy_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("FORGE_RECONCILE_POLICY", "hope")
        with pytest.raises(ValueError):
            BridgeConfig.from_env()

    def test_dispatch_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            BridgeConfig(dispatch_timeout=0)

    def test_available_budget(self) -> None:
        assert ContextConfig(token_budget=1000, reserved_for_response=100).available_budget == 900
