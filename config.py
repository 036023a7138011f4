"""
Configuration module for Codeloop.
Handles environment variables for the model endpoint, the agent loop,
context compression and the task scheduler.
"""

import logging
import os
from dataclasses import dataclass
from typing import Set

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class LLMConfig:
    """Model endpoint configuration"""
    base_url: str = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    api_key: str = os.getenv("LLM_API_KEY", "")
    model: str = os.getenv("LLM_MODEL", "gpt-4o")
    adapter_id: str = os.getenv("LLM_ADAPTER", "openai")
    timeout: float = float(os.getenv("LLM_TIMEOUT", "120"))
    max_tokens: int = int(os.getenv("MAX_TOKENS", "8192"))
    # Stream recovery settings
    max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "3"))
    retry_backoff: float = float(os.getenv("LLM_RETRY_BACKOFF", "2"))
    retry_base_delay: float = float(os.getenv("LLM_RETRY_BASE_DELAY", "1"))

    def has_credentials(self) -> bool:
        return bool(self.api_key)


@dataclass
class AgentConfig:
    """Agent loop configuration"""
    max_tool_loops: int = int(os.getenv("MAX_TOOL_LOOPS", "30"))
    max_tool_result_chars: int = int(os.getenv("MAX_TOOL_RESULT_CHARS", "10000"))
    tool_timeout: float = float(os.getenv("TOOL_TIMEOUT", "120"))
    max_repeated_tool_calls: int = int(os.getenv("MAX_REPEATED_TOOL_CALLS", "3"))
    # Approval types that run without asking
    auto_approve_edits: bool = _env_bool("AUTO_APPROVE_EDITS", "false")
    auto_approve_terminal: bool = _env_bool("AUTO_APPROVE_TERMINAL", "false")
    auto_approve_dangerous: bool = _env_bool("AUTO_APPROVE_DANGEROUS", "false")
    # ~60 Hz coalescing of streamed text
    stream_flush_interval_ms: int = int(os.getenv("STREAM_FLUSH_INTERVAL_MS", "16"))
    # Syntax-check written files and report problems back to the model
    auto_fix: bool = _env_bool("AUTO_FIX", "false")

    def auto_approved_types(self) -> Set[str]:
        approved = set()
        if self.auto_approve_edits:
            approved.add("edits")
        if self.auto_approve_terminal:
            approved.add("terminal")
        if self.auto_approve_dangerous:
            approved.add("dangerous")
        return approved


@dataclass
class ContextConfig:
    """Context compression configuration"""
    max_context_chars: int = int(os.getenv("MAX_CONTEXT_CHARS", "400000"))
    # Ratio of budget at which each level kicks in
    l1_threshold: float = 0.5
    l2_threshold: float = 0.7
    l3_threshold: float = 0.85
    l4_threshold: float = 0.95
    keep_recent_turns: int = int(os.getenv("KEEP_RECENT_TURNS", "5"))
    deep_compression_turns: int = int(os.getenv("DEEP_COMPRESSION_TURNS", "2"))
    max_important_old_turns: int = int(os.getenv("MAX_IMPORTANT_OLD_TURNS", "3"))
    max_tool_result_chars: int = int(os.getenv("MAX_TOOL_RESULT_CHARS", "10000"))
    max_assistant_chars: int = int(os.getenv("MAX_ASSISTANT_CHARS", "4000"))
    enable_llm_summary: bool = _env_bool("ENABLE_LLM_SUMMARY", "false")
    auto_handoff: bool = _env_bool("AUTO_HANDOFF", "true")


@dataclass
class SchedulerConfig:
    """Orchestrated plan execution configuration"""
    max_retries: int = int(os.getenv("SCHEDULER_MAX_RETRIES", "2"))
    task_timeout: float = float(os.getenv("SCHEDULER_TASK_TIMEOUT", "300"))
    auto_skip_on_dependency_failure: bool = _env_bool("SCHEDULER_AUTO_SKIP", "true")
    max_concurrency: int = int(os.getenv("SCHEDULER_MAX_CONCURRENCY", "3"))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Codeloop"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")


# Global config instances
llm_config = LLMConfig()
agent_config = AgentConfig()
context_config = ContextConfig()
scheduler_config = SchedulerConfig()
app_config = AppConfig()


def setup_logging(level: str = "") -> None:
    """Configure root logging from LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, (level or app_config.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
