"""
Configuration for the command bridge and the agent loop.

All configuration is loaded from environment variables, with defaults that
work against a locally running editor. Two policies that the runtime must
never guess are configured here explicitly:

- ReconcilePolicy: what the store does when an optimistic mutation's
  dispatch fails.
- ApprovalPolicy: whether security findings block an AI-proposed batch
  in approval mode, or are only attached as advisory metadata.
"""

import os
from dataclasses import dataclass, field
from enum import Enum


class ReconcilePolicy(Enum):
    """How the store reconciles an optimistic change whose dispatch failed."""
    REVERT = "revert"  # Roll the local change back and drop its history entry
    AWAIT_PUSH = "await_push"  # Keep it; the next authoritative push corrects state


class ApprovalPolicy(Enum):
    """How security findings affect a batch awaiting approval."""
    ADVISORY = "advisory"  # Findings are annotations only
    BLOCK_CRITICAL = "block_critical"  # Block when a critical finding kind is present
    BLOCK_ANY = "block_any"  # Block on any non-low finding


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LLMConfig:
    """Configuration for the LLM client."""
    base_url: str
    api_key: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("LLM_BASE_URL", "http://localhost:8000/v1"),
            api_key=os.getenv("LLM_API_KEY", ""),
            model=os.getenv("LLM_MODEL", ""),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "4096")),
        )


@dataclass
class BridgeConfig:
    """
    Configuration for the engine channel and dispatcher.

    dispatch_timeout is mandatory and generous: some commands (CSG, terrain
    generation, scene loads) trigger heavy engine work.
    """
    engine_url: str = "ws://localhost:9001"
    dispatch_timeout: float = 60.0
    reconnect_delay: float = 5.0
    reconcile_policy: ReconcilePolicy = ReconcilePolicy.REVERT

    def __post_init__(self) -> None:
        if self.dispatch_timeout <= 0:
            raise ValueError("dispatch_timeout must be positive")

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load configuration from environment variables."""
        return cls(
            engine_url=os.getenv("FORGE_ENGINE_URL", "ws://localhost:9001"),
            dispatch_timeout=float(os.getenv("FORGE_DISPATCH_TIMEOUT", "60")),
            reconnect_delay=float(os.getenv("FORGE_RECONNECT_DELAY", "5")),
            reconcile_policy=ReconcilePolicy(
                os.getenv("FORGE_RECONCILE_POLICY", ReconcilePolicy.REVERT.value)
            ),
        )


@dataclass
class LoopConfig:
    """
    Configuration for the agent loop.

    max_iterations bounds the number of model turns per user message. A model
    that keeps proposing tool calls is stopped there with a truncation notice.
    """
    max_iterations: int = 10
    approval_mode: bool = False
    system_prompt: str = ""
    include_scene_context: bool = True

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_iterations=int(os.getenv("AGENT_MAX_ITERATIONS", "10")),
            approval_mode=_env_bool("AGENT_APPROVAL_MODE", False),
            system_prompt=os.getenv("AGENT_SYSTEM_PROMPT", ""),
            include_scene_context=_env_bool("AGENT_SCENE_CONTEXT", True),
        )


@dataclass
class SecurityConfig:
    """Security gate thresholds and the approval policy."""
    approval_policy: ApprovalPolicy = ApprovalPolicy.BLOCK_CRITICAL
    critical_kinds: frozenset[str] = field(
        default_factory=lambda: frozenset({"disallowed_api"})
    )
    max_script_bytes: int = 50_000
    max_entities: int = 1000
    sandbox_enabled: bool = True
    rate_limit_enabled: bool = True
    csp_enabled: bool = True
    cors_enabled: bool = True
    max_request_size: str = "10KB"

    @classmethod
    def from_env(cls) -> "SecurityConfig":
        """Load configuration from environment variables."""
        critical = os.getenv("FORGE_CRITICAL_FINDINGS", "disallowed_api")
        return cls(
            approval_policy=ApprovalPolicy(
                os.getenv("FORGE_APPROVAL_POLICY", ApprovalPolicy.BLOCK_CRITICAL.value)
            ),
            critical_kinds=frozenset(k.strip() for k in critical.split(",") if k.strip()),
            max_script_bytes=int(os.getenv("FORGE_MAX_SCRIPT_BYTES", "50000")),
            max_entities=int(os.getenv("FORGE_MAX_ENTITIES", "1000")),
            sandbox_enabled=_env_bool("FORGE_SANDBOX_ENABLED", True),
            rate_limit_enabled=_env_bool("FORGE_RATE_LIMIT_ENABLED", True),
            csp_enabled=_env_bool("FORGE_CSP_ENABLED", True),
            cors_enabled=_env_bool("FORGE_CORS_ENABLED", True),
            max_request_size=os.getenv("FORGE_MAX_REQUEST_SIZE", "10KB"),
        )


@dataclass
class ContextConfig:
    """
    Token budget for the conversation sent to the model.

    Tokens are approximated as chars/4; when the budget is exceeded the
    oldest non-system messages are dropped.
    """
    token_budget: int = 128000
    chars_per_token: float = 4.0
    reserved_for_response: int = 4096

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            token_budget=int(os.getenv("CONTEXT_TOKEN_BUDGET", "128000")),
            chars_per_token=float(os.getenv("CONTEXT_CHARS_PER_TOKEN", "4.0")),
            reserved_for_response=int(os.getenv("CONTEXT_RESERVED_FOR_RESPONSE", "4096")),
        )

    @property
    def available_budget(self) -> int:
        """Tokens available for context (excluding response reservation)."""
        return self.token_budget - self.reserved_for_response


@dataclass
class ForgeConfig:
    """Combined configuration for the whole bridge."""
    llm: LLMConfig
    bridge: BridgeConfig
    loop: LoopConfig
    security: SecurityConfig
    context: ContextConfig

    @classmethod
    def from_env(cls) -> "ForgeConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            bridge=BridgeConfig.from_env(),
            loop=LoopConfig.from_env(),
            security=SecurityConfig.from_env(),
            context=ContextConfig.from_env(),
        )
