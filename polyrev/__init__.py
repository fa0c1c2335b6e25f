"""
polyrev

Parallel code review and feature planning driven by external AI coding CLIs
(Claude Code, Codex), with tolerant parsing of their output into findings and
task plans.
"""

__version__ = "0.1.0"

# Configuration
from polyrev.config import Config, Priority, ProviderKind, Settings, load_config

# Errors
from polyrev.errors import (
    ConfigurationError,
    NoFragmentsToReduceError,
    NoUnitsMatchedError,
    ParseError,
    PolyrevError,
    ProviderError,
)

# Findings
from polyrev.findings import Finding, parse_findings

# Review orchestration
from polyrev.orchestrate import Orchestrator, RunOptions, run_review

# Planning
from polyrev.planner import PlanOptions, PlanOrchestrator, reduce_plan, revise_plan

# Providers
from polyrev.providers import ProviderOutput, ProviderRunner, create_runner
from polyrev.retry import retry_with_backoff
from polyrev.runner import ReviewerResult, ReviewerStatus, RunReport
from polyrev.state import RunState

__all__ = [
    # Version
    "__version__",
    # Config
    "Config",
    "Priority",
    "ProviderKind",
    "Settings",
    "load_config",
    # Errors
    "PolyrevError",
    "ConfigurationError",
    "NoUnitsMatchedError",
    "NoFragmentsToReduceError",
    "ParseError",
    "ProviderError",
    # Findings
    "Finding",
    "parse_findings",
    # Review
    "Orchestrator",
    "RunOptions",
    "run_review",
    "ReviewerResult",
    "ReviewerStatus",
    "RunReport",
    "RunState",
    # Planning
    "PlanOptions",
    "PlanOrchestrator",
    "reduce_plan",
    "revise_plan",
    # Providers
    "ProviderOutput",
    "ProviderRunner",
    "create_runner",
    "retry_with_backoff",
]
