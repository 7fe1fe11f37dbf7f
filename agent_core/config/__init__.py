"""
Configuration module - Settings and configuration management
"""

from .env_config import EnvConfig
from .agent_config import AgentConfig, LLMConfig, LLMProvider, MemoryConfig, RateLimitConfig

__all__ = [
    'AgentConfig',
    'LLMConfig',
    'LLMProvider',
    'MemoryConfig',
    'RateLimitConfig',
    'EnvConfig',
]
