"""Multi-perspective feature planning."""

from .orchestrator import (
    PlanOptions,
    PlanOrchestrator,
    SelectionResult,
    apply_selection_policy,
    execute_perspective,
    select_perspectives,
)
from .parser import parse_plan_fragment, parse_selection, parse_unified_plan
from .reducer import (
    ReductionResult,
    parse_revision_yaml,
    plan_output_dir,
    reduce_plan,
    revise_plan,
    sanitize_plan_name,
    write_fragments,
    write_plan,
)
from .types import (
    PerspectiveResult,
    PerspectiveStatus,
    PlanFragment,
    PlanningResult,
    UnifiedPlan,
    UnifiedTask,
)

__all__ = [
    # Orchestration
    "PlanOptions",
    "PlanOrchestrator",
    "SelectionResult",
    "apply_selection_policy",
    "execute_perspective",
    "select_perspectives",
    # Parsing
    "parse_plan_fragment",
    "parse_selection",
    "parse_unified_plan",
    # Reduction and revision
    "ReductionResult",
    "parse_revision_yaml",
    "plan_output_dir",
    "reduce_plan",
    "revise_plan",
    "sanitize_plan_name",
    "write_fragments",
    "write_plan",
    # Types
    "PerspectiveResult",
    "PerspectiveStatus",
    "PlanFragment",
    "PlanningResult",
    "UnifiedPlan",
    "UnifiedTask",
]
