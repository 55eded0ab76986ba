"""Rollback of a failed apply to the state recorded before it."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from stackweave.orchestrator.dependency_graph import DependencyGraph
from stackweave.orchestrator.executor import ExecutionReport, ExecutionStatus, Executor, ProgressCallback
from stackweave.orchestrator.planner import OLD_SUFFIX, ChangeSet, Planner
from stackweave.state.models import PendingOperation, StateRecord
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)


class RollbackStrategy(Enum):
    """Strategy for rollback."""
    AUTOMATIC = "automatic"  # Restore touched resources when a run does not succeed
    NONE = "none"  # Leave the partial result and report it


@dataclass
class RollbackResult:
    """Result of rollback execution."""

    status: ExecutionStatus
    change_set: Optional[ChangeSet] = None
    report: Optional[ExecutionReport] = None
    reinstated: List[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def is_success(self) -> bool:
        """Check if rollback was successful."""
        return self.status == ExecutionStatus.SUCCESS


class RollbackManager:
    """Plans and executes rollbacks.

    A rollback is an ordinary plan whose desired state is the pre-run
    records of the resources the failed run touched.
    """

    def __init__(self, executor: Executor, planner: Planner):
        """Initialize rollback manager.

        Args:
            executor: Executor for running the rollback plan
            planner: Planner for creating the rollback plan
        """
        self.executor = executor
        self.planner = planner
        self.logger = get_logger(__name__)

    @property
    def state_store(self):
        return self.executor.state_store

    def reinstate_replaced(self, touched: List[str], records_before: Dict[str, StateRecord]) -> List[str]:
        """
        Point records back at old resources whose replacement was not retired yet.

        The new resource is queued for retirement instead, so the rollback
        plan deletes it and keeps the original.

        Returns:
            Logical IDs that were reinstated
        """
        pending = self.state_store.pending_operations()
        reinstated = []
        for logical_id in touched:
            before = records_before.get(logical_id)
            retire = pending.get(logical_id + OLD_SUFFIX)
            current = self.state_store.get(logical_id)
            if before is None or retire is None or current is None:
                continue
            if retire.handle != before.physical_id or current.physical_id == before.physical_id:
                continue

            self.logger.info(f"Reinstating {logical_id} ({before.physical_id}); retiring {current.physical_id}")
            self.state_store.swap(logical_id, before, PendingOperation(
                entry_id=logical_id + OLD_SUFFIX,
                logical_id=logical_id,
                kind=current.kind,
                action="retire",
                handle=current.physical_id,
                properties=current.properties,
            ))
            reinstated.append(logical_id)
        return reinstated

    def create_rollback_plan(
        self,
        report: ExecutionReport,
        records_before: Dict[str, StateRecord]
    ) -> ChangeSet:
        """Create a plan restoring every resource the run touched.

        Args:
            report: Report of the run being rolled back
            records_before: Snapshot taken before the run

        Returns:
            ChangeSet in execution order
        """
        touched = set(report.touched())
        desired = DependencyGraph.from_records(
            record for logical_id, record in records_before.items() if logical_id in touched
        )
        current = {
            logical_id: record
            for logical_id, record in self.state_store.snapshot().items()
            if logical_id in touched
        }
        pending = {
            entry_id: operation
            for entry_id, operation in self.state_store.pending_operations().items()
            if operation.logical_id in touched
        }
        return self.planner.create_plan(
            desired,
            current,
            stack_name=report.stack_name,
            pending=pending,
        )

    def rollback(
        self,
        report: ExecutionReport,
        records_before: Dict[str, StateRecord],
        progress_callback: Optional[ProgressCallback] = None
    ) -> RollbackResult:
        """Roll back a run.

        Args:
            report: Report of the run being rolled back
            records_before: Snapshot taken before the run
            progress_callback: Optional progress callback

        Returns:
            RollbackResult
        """
        start_time = datetime.utcnow()
        touched = report.touched()
        if not touched:
            self.logger.info("Nothing to roll back")
            return RollbackResult(status=ExecutionStatus.SUCCESS, start_time=start_time, end_time=start_time)

        self.logger.warning(f"Rolling back {len(touched)} resource(s): {', '.join(touched)}")
        reinstated = self.reinstate_replaced(touched, records_before)
        change_set = self.create_rollback_plan(report, records_before)
        rollback_report = self.executor.execute(change_set, progress_callback)

        if rollback_report.is_success():
            self.logger.info("Rollback completed successfully")
        else:
            self.logger.error(f"Rollback finished with status {rollback_report.status.value}")

        return RollbackResult(
            status=rollback_report.status,
            change_set=change_set,
            report=rollback_report,
            reinstated=reinstated,
            start_time=start_time,
            end_time=datetime.utcnow(),
        )
