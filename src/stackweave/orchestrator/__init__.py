"""Orchestrator module for planning, execution, rollback and drift detection."""

from stackweave.orchestrator.dependency_graph import (
    DependencyGraph,
    GraphBuilder,
    ResourceNode,
    build_graph,
)
from stackweave.orchestrator.planner import (
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    Planner,
    ReplacePhase,
)
from stackweave.orchestrator.executor import (
    EntryResult,
    ExecutionReport,
    ExecutionStatus,
    Executor,
    ProgressCallback,
)
from stackweave.orchestrator.leases import Lease, LeaseManager
from stackweave.orchestrator.drift import DriftDetector, DriftEvent, DriftReport, DriftType
from stackweave.orchestrator.rollback import RollbackManager, RollbackResult, RollbackStrategy
from stackweave.orchestrator.orchestrator import StackOrchestrator, build_providers

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'GraphBuilder',
    'ResourceNode',
    'build_graph',

    # Planning
    'ChangeAction',
    'ChangeSet',
    'ChangeSetEntry',
    'Planner',
    'ReplacePhase',

    # Execution
    'EntryResult',
    'ExecutionReport',
    'ExecutionStatus',
    'Executor',
    'ProgressCallback',
    'Lease',
    'LeaseManager',

    # Drift
    'DriftDetector',
    'DriftEvent',
    'DriftReport',
    'DriftType',

    # Rollback
    'RollbackManager',
    'RollbackResult',
    'RollbackStrategy',

    # Main orchestrator
    'StackOrchestrator',
    'build_providers',
]
