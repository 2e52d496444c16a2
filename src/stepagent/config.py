"""
Configuration for the execution engine.

All configuration is loaded from environment variables, so the same
agent code runs against different model backends and pool sizes
without code changes. Every section can also be built directly, which
is what tests and embedding applications do.
"""

import os
from dataclasses import dataclass, field


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
class LoopConfig:
    """
    Configuration for the run loop.

    max_loops bounds the number of iterations of one run. max_retries is
    the shared retry budget used by the retry fallback; 0 means fail fast.
    """
    max_loops: int = 10
    max_retries: int = 0
    retry_backoff_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_loops=int(os.getenv("AGENT_MAX_LOOPS", "10")),
            max_retries=int(os.getenv("AGENT_MAX_RETRIES", "0")),
            retry_backoff_seconds=float(os.getenv("AGENT_RETRY_BACKOFF", "0")),
        )


@dataclass
class ExecutorConfig:
    """Sizes of the worker pools used for actions and tool batches."""
    action_threads: int = 4
    action_queue_depth: int = 16
    tool_batch_workers: int = 4

    @classmethod
    def from_env(cls) -> "ExecutorConfig":
        """Load configuration from environment variables."""
        return cls(
            action_threads=int(os.getenv("ACTION_POOL_THREADS", "4")),
            action_queue_depth=int(os.getenv("ACTION_POOL_QUEUE_DEPTH", "16")),
            tool_batch_workers=int(os.getenv("TOOL_BATCH_WORKERS", "4")),
        )


@dataclass
class EngineConfig:
    """Combined configuration for the engine."""
    loop: LoopConfig = field(default_factory=LoopConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load all configuration from environment variables."""
        return cls(
            loop=LoopConfig.from_env(),
            executor=ExecutorConfig.from_env(),
        )
