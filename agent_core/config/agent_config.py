"""
Agent configuration - Budgets, retry policies and collaborators of the execution core
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import os
from enum import Enum

from agent_core.config.env_config import EnvConfig
from agent_core.models.policy import RetryPolicy


class LLMProvider(str, Enum):
    """Supported LLM providers"""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class LLMConfig:
    """
    Configuration for the LLM behind the reasoning oracle.

    Attributes:
        provider: LLM provider (anthropic, openai)
        model_name: Model identifier for the provider
        api_key: API key (reads LLM_API_KEY or the provider variable if not provided)
        base_url: Base URL for API (useful for proxies and compatible servers)
        temperature: Temperature for response generation (0-2)
        max_tokens: Maximum tokens in response
        timeout: Request timeout in seconds
    """

    provider: str = "anthropic"
    model_name: str = "claude-sonnet-4-20250514"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: Optional[int] = 4096
    timeout: int = 60

    def __post_init__(self):
        """Validate and set up LLM configuration."""
        valid_providers = [p.value for p in LLMProvider]
        if self.provider not in valid_providers:
            raise ValueError(f"Provider must be one of {valid_providers}, got {self.provider}")

        if not 0 <= self.temperature <= 2:
            raise ValueError(f"Temperature must be between 0 and 2, got {self.temperature}")

        if not self.api_key:
            self.api_key = os.getenv('LLM_API_KEY') or os.getenv(self._get_env_var_for_provider())
            if not self.api_key:
                raise ValueError(
                    f"API key not provided and LLM_API_KEY or {self._get_env_var_for_provider()} "
                    f"environment variable not set. Set it via config or environment: "
                    f"export LLM_API_KEY=your-key"
                )

    def _get_env_var_for_provider(self) -> str:
        """Get environment variable name for provider (fallback only)."""
        env_vars = {
            "anthropic": "ANTHROPIC_API_KEY",
            "openai": "OPENAI_API_KEY",
        }
        return env_vars.get(self.provider, f"{self.provider.upper()}_API_KEY")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding API key for security."""
        return {
            "provider": self.provider,
            "model_name": self.model_name,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
            "base_url": self.base_url,
        }


@dataclass
class RateLimitConfig:
    """
    Configuration for oracle rate limiting.

    Attributes:
        requests_per_minute: Maximum requests per minute (0 = unlimited)
        requests_per_second: Maximum requests per second (0 = unlimited, overrides RPM)
        min_request_delay: Minimum delay between requests in seconds (0 = no delay)
    """
    requests_per_minute: int = 60
    requests_per_second: int = 0
    min_request_delay: float = 0.0

    def __post_init__(self):
        if self.requests_per_minute < 0:
            raise ValueError("requests_per_minute cannot be negative")
        if self.requests_per_second < 0:
            raise ValueError("requests_per_second cannot be negative")
        if self.min_request_delay < 0:
            raise ValueError("min_request_delay cannot be negative")

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Create rate limit config from environment variables."""
        return cls(
            requests_per_minute=EnvConfig.get_int('LLM_RATE_LIMIT_RPM', 60),
            requests_per_second=EnvConfig.get_int('LLM_RATE_LIMIT_RPS', 0),
            min_request_delay=EnvConfig.get_float('LLM_MIN_REQUEST_DELAY', 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests_per_minute": self.requests_per_minute,
            "requests_per_second": self.requests_per_second,
            "min_request_delay": self.min_request_delay,
        }


@dataclass
class MemoryConfig:
    """
    Configuration for the scoped memory store.

    Attributes:
        short_term_ttl_ms: Default TTL of the shortterm scope (milliseconds)
        max_working_memory: Capacity of the working scope
        max_short_term: Capacity of the shortterm scope
        sweep_interval_seconds: Period of the background expiry sweep
        episodic_compression_ms: Age after which episodic entries are compressed
            at the end of a run (0 disables compression)
        backend: "memory" or "redis"
        redis_url: Connection URL of the redis backend
        redis_prefix: Key prefix of the redis backend
    """
    short_term_ttl_ms: int = 3_600_000
    max_working_memory: int = 100
    max_short_term: int = 1000
    sweep_interval_seconds: float = 300.0
    episodic_compression_ms: int = 86_400_000
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "agent_core:memory"

    def __post_init__(self):
        if self.max_working_memory < 1 or self.max_short_term < 1:
            raise ValueError("memory capacities must be at least 1")
        if self.short_term_ttl_ms < 0:
            raise ValueError("short_term_ttl_ms cannot be negative")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.episodic_compression_ms < 0:
            raise ValueError("episodic_compression_ms cannot be negative")
        if self.backend not in ("memory", "redis"):
            raise ValueError(f"Unknown memory backend: {self.backend}")

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "MemoryConfig":
        return cls(
            short_term_ttl_ms=EnvConfig.get_int(f"{prefix}MEMORY_SHORT_TERM_TTL_MS", 3_600_000),
            max_working_memory=EnvConfig.get_int(f"{prefix}MEMORY_MAX_WORKING", 100),
            max_short_term=EnvConfig.get_int(f"{prefix}MEMORY_MAX_SHORT_TERM", 1000),
            sweep_interval_seconds=EnvConfig.get_float(f"{prefix}MEMORY_SWEEP_INTERVAL", 300.0),
            episodic_compression_ms=EnvConfig.get_int(
                f"{prefix}MEMORY_EPISODIC_COMPRESSION_MS", 86_400_000
            ),
            backend=os.getenv(f"{prefix}MEMORY_BACKEND", "memory"),
            redis_url=os.getenv(f"{prefix}MEMORY_REDIS_URL", "redis://localhost:6379/0"),
            redis_prefix=os.getenv(f"{prefix}MEMORY_REDIS_PREFIX", "agent_core:memory"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "short_term_ttl_ms": self.short_term_ttl_ms,
            "max_working_memory": self.max_working_memory,
            "max_short_term": self.max_short_term,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "episodic_compression_ms": self.episodic_compression_ms,
            "backend": self.backend,
            "redis_url": self.redis_url,
            "redis_prefix": self.redis_prefix,
        }


@dataclass
class AgentConfig:
    """
    Configuration settings for the execution core.

    Attributes:
        max_parallel_tasks: Concurrently Executing/Delegating tasks (default: 4).
            A delegating parent keeps its slot while its child runs, so a
            value of 1 ends any delegating run in a dependency deadlock;
            use at least 2 when tools may delegate.
        max_sub_steps_per_task: Reasoning iterations per task (default: 10)
        max_llm_calls_per_run: Oracle calls shared by all tasks of a run (default: 40)
        max_agent_depth: Longest delegation chain (default: 3)
        task_retry_delay: Seconds between task-level retries (default: 1.0)
        default_max_retries: max_retries given to tasks spawned by delegation
        oracle_timeout: Seconds an oracle consultation may take (default: 60)
        tool_history_size: Execution records kept by the tool registry
        tool_retry_policies: Per-tool RetryPolicy overrides, keyed by tool name
        llm: LLM configuration (None when the oracle is not LLM-backed)
        memory: Memory store configuration
        rate_limit: Rate limiting configuration for oracle calls
        log_level: Logging level (default: 'INFO')
        debug: Enable debug mode with detailed logging (default: False)
    """

    max_parallel_tasks: int = 4
    max_sub_steps_per_task: int = 10
    max_llm_calls_per_run: int = 40
    max_agent_depth: int = 3
    task_retry_delay: float = 1.0
    default_max_retries: int = 3
    oracle_timeout: float = 60.0
    tool_history_size: int = 1000
    tool_retry_policies: Dict[str, RetryPolicy] = field(default_factory=dict)
    llm: Optional[LLMConfig] = None
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    log_level: str = "INFO"
    debug: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.max_parallel_tasks < 1:
            raise ValueError("max_parallel_tasks must be at least 1")
        if self.max_sub_steps_per_task < 1:
            raise ValueError("max_sub_steps_per_task must be at least 1")
        if self.max_llm_calls_per_run < 0:
            raise ValueError("max_llm_calls_per_run cannot be negative")
        if self.max_agent_depth < 1:
            raise ValueError("max_agent_depth must be at least 1")
        if self.task_retry_delay < 0:
            raise ValueError("task_retry_delay cannot be negative")
        if self.default_max_retries < 0:
            raise ValueError("default_max_retries cannot be negative")
        if self.oracle_timeout <= 0:
            raise ValueError("oracle_timeout must be positive")
        if self.tool_history_size < 1:
            raise ValueError("tool_history_size must be at least 1")
        if self.log_level not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError(f"Invalid log_level: {self.log_level}")

        if isinstance(self.llm, dict):
            self.llm = LLMConfig(**self.llm)
        if isinstance(self.memory, dict):
            self.memory = MemoryConfig(**self.memory)
        if isinstance(self.rate_limit, dict):
            self.rate_limit = RateLimitConfig(**self.rate_limit)
        self.tool_retry_policies = {
            name: policy if isinstance(policy, RetryPolicy) else RetryPolicy.from_dict(policy)
            for name, policy in self.tool_retry_policies.items()
        }

    @classmethod
    def from_env(cls, prefix: str = "AGENT_") -> "AgentConfig":
        """
        Create configuration from environment variables.

        Args:
            prefix: Prefix for environment variables (default: "AGENT_")

        Returns:
            Configured AgentConfig instance

        Example:
            export AGENT_MAX_PARALLEL_TASKS=2
            export AGENT_MAX_LLM_CALLS=20
            export AGENT_TOOL_RETRY_POLICIES='{"fetch_url": {"max_retries": 5, "backoff": "linear"}}'
            config = AgentConfig.from_env()
        """
        llm = None
        if os.getenv(f"{prefix}LLM_PROVIDER"):
            max_tokens = os.getenv(f"{prefix}LLM_MAX_TOKENS")
            llm = LLMConfig(
                provider=os.getenv(f"{prefix}LLM_PROVIDER", "anthropic"),
                model_name=os.getenv(f"{prefix}LLM_MODEL", "claude-sonnet-4-20250514"),
                api_key=os.getenv("LLM_API_KEY"),
                base_url=os.getenv("LLM_API_BASE_URL"),
                temperature=EnvConfig.get_float(f"{prefix}LLM_TEMPERATURE", 0.2),
                max_tokens=int(max_tokens) if max_tokens else 4096,
                timeout=EnvConfig.get_int(f"{prefix}LLM_TIMEOUT", 60),
            )

        return cls(
            max_parallel_tasks=EnvConfig.get_int(f"{prefix}MAX_PARALLEL_TASKS", 4),
            max_sub_steps_per_task=EnvConfig.get_int(f"{prefix}MAX_SUB_STEPS", 10),
            max_llm_calls_per_run=EnvConfig.get_int(f"{prefix}MAX_LLM_CALLS", 40),
            max_agent_depth=EnvConfig.get_int(f"{prefix}MAX_AGENT_DEPTH", 3),
            task_retry_delay=EnvConfig.get_float(f"{prefix}TASK_RETRY_DELAY", 1.0),
            default_max_retries=EnvConfig.get_int(f"{prefix}MAX_RETRIES", 3),
            oracle_timeout=EnvConfig.get_float(f"{prefix}ORACLE_TIMEOUT", 60.0),
            tool_history_size=EnvConfig.get_int(f"{prefix}TOOL_HISTORY_SIZE", 1000),
            tool_retry_policies=EnvConfig.get_json(f"{prefix}TOOL_RETRY_POLICIES", {}) or {},
            llm=llm,
            memory=MemoryConfig.from_env(prefix),
            rate_limit=RateLimitConfig.from_env(),
            log_level=os.getenv(f"{prefix}LOG_LEVEL", "INFO").upper(),
            debug=EnvConfig.get_bool(f"{prefix}DEBUG", False),
        )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "AgentConfig":
        """
        Create configuration from dictionary.

        Example:
            config = AgentConfig.from_dict({
                "max_parallel_tasks": 2,
                "memory": {"max_working_memory": 10},
                "tool_retry_policies": {"fetch_url": {"max_retries": 5}},
            })
        """
        config_dict = dict(config_dict)
        llm_config = config_dict.pop("llm", None)
        if isinstance(llm_config, dict):
            llm_config = LLMConfig(**llm_config)
        memory_config = config_dict.pop("memory", {})
        if isinstance(memory_config, dict):
            memory_config = MemoryConfig(**memory_config)
        rate_limit_config = config_dict.pop("rate_limit", {})
        if isinstance(rate_limit_config, dict):
            rate_limit_config = RateLimitConfig(**rate_limit_config)

        return cls(llm=llm_config, memory=memory_config, rate_limit=rate_limit_config, **config_dict)

    def retry_policy_for(self, tool_name: str) -> Optional[RetryPolicy]:
        return self.tool_retry_policies.get(tool_name)

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """
        Convert to dictionary.

        Args:
            include_secrets: Whether to include API keys (default: False)
        """
        result: Dict[str, Any] = {
            "max_parallel_tasks": self.max_parallel_tasks,
            "max_sub_steps_per_task": self.max_sub_steps_per_task,
            "max_llm_calls_per_run": self.max_llm_calls_per_run,
            "max_agent_depth": self.max_agent_depth,
            "task_retry_delay": self.task_retry_delay,
            "default_max_retries": self.default_max_retries,
            "oracle_timeout": self.oracle_timeout,
            "tool_history_size": self.tool_history_size,
            "tool_retry_policies": {
                name: policy.to_dict() for name, policy in self.tool_retry_policies.items()
            },
            "llm": self.llm.to_dict() if self.llm else None,
            "memory": self.memory.to_dict(),
            "rate_limit": self.rate_limit.to_dict(),
            "log_level": self.log_level,
            "debug": self.debug,
        }

        if include_secrets and self.llm and self.llm.api_key:
            result["llm"]["api_key"] = self.llm.api_key

        return result
