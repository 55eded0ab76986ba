"""Change-set executor with dependency-driven parallel scheduling."""

import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from stackweave.orchestrator.dependency_graph import ResourceStatus
from stackweave.orchestrator.leases import LeaseManager
from stackweave.orchestrator.planner import ChangeAction, ChangeSet, ChangeSetEntry, ReplacePhase
from stackweave.providers.base import BaseProvider, ProviderRegistry, ProvisionResult
from stackweave.providers.catalog import ResourceKindCatalog
from stackweave.state.manager import StateStore
from stackweave.state.models import PendingOperation, StateRecord
from stackweave.template.references import Resolver
from stackweave.utils.errors import (
    ErrorContext,
    ExecutionCancelledError,
    OperationTimeoutError,
    ProviderError,
    ReconcileError,
    error_handler,
)
from stackweave.utils.logging import get_logger, resource_logger
from stackweave.utils.retry import PollingBackoff, RetryStrategy

logger = get_logger(__name__)

# Node lifecycle state while an entry of each action is in flight
IN_FLIGHT_STATUS = {
    ChangeAction.CREATE: ResourceStatus.CREATING,
    ChangeAction.REPLACE: ResourceStatus.CREATING,
    ChangeAction.UPDATE: ResourceStatus.UPDATING,
    ChangeAction.DELETE: ResourceStatus.DELETING,
}


class ExecutionStatus(Enum):
    """Status of an entry or of a whole run."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    PARTIAL = "partial"


@dataclass
class EntryResult:
    """Result of executing a single change-set entry."""

    entry_id: str
    logical_id: str
    action: ChangeAction
    status: ExecutionStatus
    physical_id: Optional[str] = None
    error: Optional[ReconcileError] = None
    message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if execution was successful."""
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        """Check if execution failed."""
        return self.status == ExecutionStatus.FAILED


@dataclass
class ExecutionReport:
    """Per-entry outcomes of a run."""

    stack_name: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    results: Dict[str, EntryResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def _with_status(self, status: ExecutionStatus) -> List[str]:
        return [entry_id for entry_id, result in self.results.items() if result.status == status]

    def succeeded(self) -> List[str]:
        return self._with_status(ExecutionStatus.SUCCESS)

    def failed(self) -> List[str]:
        return self._with_status(ExecutionStatus.FAILED)

    def skipped(self) -> List[str]:
        return self._with_status(ExecutionStatus.SKIPPED)

    def cancelled(self) -> List[str]:
        return self._with_status(ExecutionStatus.CANCELLED)

    def touched(self) -> List[str]:
        """Logical IDs whose provider operation was started."""
        touched = []
        for result in self.results.values():
            if result.action == ChangeAction.NO_OP or result.status == ExecutionStatus.SKIPPED:
                continue
            if result.logical_id not in touched:
                touched.append(result.logical_id)
        return touched

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def get_summary(self) -> Dict[str, int]:
        summary = {status.value: 0 for status in (
            ExecutionStatus.SUCCESS,
            ExecutionStatus.FAILED,
            ExecutionStatus.SKIPPED,
            ExecutionStatus.CANCELLED,
        )}
        for result in self.results.values():
            summary[result.status.value] += 1
        return summary


# entry_id, status, message
ProgressCallback = Callable[[str, ExecutionStatus, Optional[str]], None]


class Executor:
    """Applies change sets against providers.

    An entry starts only once every prerequisite has succeeded. A failed
    entry marks all transitive dependents Skipped while independent entries
    keep going; the report carries per-entry outcomes.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        state_store: StateStore,
        catalog: Optional[ResourceKindCatalog] = None,
        leases: Optional[LeaseManager] = None,
        parallelism: int = 4,
        retry_strategy: Optional[RetryStrategy] = None,
        polling: Optional[PollingBackoff] = None
    ):
        """Initialize executor.

        Args:
            providers: Provider registry
            state_store: State store receiving the results
            catalog: Resource-kind catalog deciding terminal statuses
            leases: Lease manager shared with other runs in this process
            parallelism: Maximum number of entries in flight
            retry_strategy: Retry policy for transient provider errors
            polling: Backoff used while waiting for terminal status
        """
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.providers = providers
        self.state_store = state_store
        self.catalog = catalog or ResourceKindCatalog()
        self.leases = leases or LeaseManager()
        self.parallelism = parallelism
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.polling = polling or PollingBackoff()
        self._cancel_event = threading.Event()
        self.logger = get_logger(__name__)

    def cancel(self) -> None:
        """Ask the current run to stop starting new work.

        Called between runs, it cancels the next run instead.
        """
        self._cancel_event.set()

    def execute(
        self,
        change_set: ChangeSet,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ExecutionReport:
        """Execute a change set.

        Args:
            change_set: Planned entries in execution order
            progress_callback: Optional callback for progress updates
            cancel_event: Run-level cancellation signal

        Returns:
            ExecutionReport with the outcome of every entry
        """
        requested = self._cancel_event
        if cancel_event is None:
            cancel_event = requested
        elif requested.is_set():
            cancel_event.set()
        self._cancel_event = cancel_event
        try:
            return self._execute(change_set, progress_callback, cancel_event)
        finally:
            self._cancel_event = threading.Event()

    def _execute(
        self,
        change_set: ChangeSet,
        progress_callback: Optional[ProgressCallback],
        cancel_event: threading.Event
    ) -> ExecutionReport:
        owner = f"{change_set.stack_name}:{uuid.uuid4().hex[:8]}"
        report = ExecutionReport(stack_name=change_set.stack_name, start_time=datetime.utcnow())
        entries = {entry.entry_id: entry for entry in change_set.entries}
        not_started = [entry.entry_id for entry in change_set.entries]
        running: Dict[Future, str] = {}

        self.logger.info(
            f"Applying {len(change_set.actionable())} change(s) to stack {change_set.stack_name} "
            f"(parallelism={self.parallelism})"
        )

        def finish(result: EntryResult) -> None:
            report.results[result.entry_id] = result
            if progress_callback:
                progress_callback(result.entry_id, result.status, result.message)

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="stackweave") as pool:
            while True:
                for entry_id in list(not_started):
                    entry = entries[entry_id]
                    blocked = [
                        prerequisite for prerequisite in entry.prerequisites
                        if prerequisite in report.results and not report.results[prerequisite].is_success()
                    ]
                    waiting = [
                        prerequisite for prerequisite in entry.prerequisites
                        if prerequisite not in report.results
                    ]

                    if cancel_event.is_set():
                        message = "Run cancelled before start"
                    elif blocked:
                        message = f"Prerequisite {blocked[0]} did not succeed"
                    else:
                        message = None

                    if message is not None:
                        not_started.remove(entry_id)
                        finish(self._result(entry, ExecutionStatus.SKIPPED, message=message))
                        continue
                    if waiting:
                        continue

                    if entry.action == ChangeAction.NO_OP:
                        not_started.remove(entry_id)
                        self._mark(entry, ResourceStatus.ACTIVE)
                        finish(self._result(entry, ExecutionStatus.SUCCESS, message="No changes"))
                        continue

                    if len(running) >= self.parallelism:
                        continue
                    not_started.remove(entry_id)
                    if progress_callback:
                        progress_callback(entry_id, ExecutionStatus.IN_PROGRESS, entry.describe())
                    future = pool.submit(self._run_entry, entry, change_set, owner, cancel_event)
                    running[future] = entry_id

                if not running:
                    if not_started:
                        # Only reachable if prerequisites name entries outside the change set
                        for entry_id in list(not_started):
                            not_started.remove(entry_id)
                            finish(self._result(
                                entries[entry_id],
                                ExecutionStatus.SKIPPED,
                                message="Prerequisite not in change set"
                            ))
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    finish(future.result())

        report.results = {
            entry.entry_id: report.results[entry.entry_id] for entry in change_set.entries
        }
        report.end_time = datetime.utcnow()
        report.duration = (report.end_time - report.start_time).total_seconds()
        report.status = self._overall_status(report, cancel_event.is_set())

        summary = report.get_summary()
        self.logger.info(
            f"Run {report.status.value}: {summary['success']} succeeded, {summary['failed']} failed, "
            f"{summary['skipped']} skipped, {summary['cancelled']} cancelled in {report.duration:.1f}s"
        )
        return report

    def _overall_status(self, report: ExecutionReport, cancelled: bool) -> ExecutionStatus:
        if cancelled and (report.cancelled() or report.skipped()):
            return ExecutionStatus.CANCELLED
        if not report.failed() and not report.skipped() and not report.cancelled():
            return ExecutionStatus.SUCCESS
        changed = [
            entry_id for entry_id in report.succeeded()
            if report.results[entry_id].action != ChangeAction.NO_OP
        ]
        return ExecutionStatus.PARTIAL if changed else ExecutionStatus.FAILED

    def _mark(self, entry: ChangeSetEntry, status: ResourceStatus) -> None:
        if entry.node is not None and entry.phase != ReplacePhase.DELETE_OLD:
            entry.node.status = status

    def _result(self, entry: ChangeSetEntry, status: ExecutionStatus, **kwargs) -> EntryResult:
        return EntryResult(
            entry_id=entry.entry_id,
            logical_id=entry.logical_id,
            action=entry.action,
            status=status,
            **kwargs
        )

    def _run_entry(
        self,
        entry: ChangeSetEntry,
        change_set: ChangeSet,
        owner: str,
        cancel_event: threading.Event
    ) -> EntryResult:
        """Apply one entry under a lease; never raises."""
        log = resource_logger(
            self.logger,
            stack=change_set.stack_name,
            resource_id=entry.logical_id,
            resource_type=entry.kind,
            operation=entry.action.value,
        )
        context = ErrorContext(
            resource_id=entry.logical_id,
            resource_type=entry.kind,
            operation=entry.describe(),
        )
        start_time = datetime.utcnow()
        physical_id = None
        status = ExecutionStatus.SUCCESS
        error = None

        try:
            with self.leases.hold(entry.logical_id, owner):
                log.info(f"Starting {entry.describe()}")
                self._mark(entry, IN_FLIGHT_STATUS[entry.action])
                physical_id = self._apply(entry, change_set, cancel_event)
        except ExecutionCancelledError as e:
            status, error = ExecutionStatus.CANCELLED, e
        except ReconcileError as e:
            status, error = ExecutionStatus.FAILED, e
        except Exception as e:
            status, error = ExecutionStatus.FAILED, error_handler.handle_exception(e, context)

        end_time = datetime.utcnow()
        duration = (end_time - start_time).total_seconds()
        if error is not None and error.context.resource_id is None:
            error.context = context

        if status == ExecutionStatus.SUCCESS:
            self._mark(entry, ResourceStatus.ACTIVE)
            log.info(f"Completed {entry.describe()} in {duration:.1f}s", extra={'duration': duration})
        elif status == ExecutionStatus.CANCELLED:
            log.warning(f"Cancelled {entry.describe()}: {error.message}")
        else:
            self._mark(entry, ResourceStatus.FAILED)
            log.error(f"Failed {entry.describe()}: {error.message}", extra={'duration': duration})

        return self._result(
            entry,
            status,
            physical_id=physical_id,
            error=error,
            message=error.message if error else None,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
        )

    def _apply(self, entry: ChangeSetEntry, change_set: ChangeSet, cancel_event: threading.Event) -> Optional[str]:
        provider = self.providers.for_kind(entry.kind)

        if entry.phase == ReplacePhase.DELETE_OLD:
            return self._retire(entry, provider, cancel_event)
        if entry.action == ChangeAction.DELETE:
            return self._delete(entry, provider, cancel_event)
        if entry.action == ChangeAction.UPDATE:
            return self._update(entry, change_set, provider, cancel_event)
        return self._create(entry, change_set, provider, cancel_event)

    def _resolve(self, entry: ChangeSetEntry, change_set: ChangeSet) -> Dict[str, Any]:
        """Resolve properties against the State Store as it is now."""
        resolver = Resolver(change_set.parameters, self.state_store.get, change_set.exports, strict=True)
        return resolver.resolve(entry.node.properties, entry.logical_id)

    def _create(
        self,
        entry: ChangeSetEntry,
        change_set: ChangeSet,
        provider: BaseProvider,
        cancel_event: threading.Event
    ) -> str:
        properties = self._resolve(entry, change_set)
        pending = self.state_store.pending_operation(entry.entry_id)

        if pending is not None and pending.action == "create":
            logger.info(f"Resuming create of {entry.logical_id} from request {pending.handle}")
            result = self.retry_strategy.execute_with_retry(
                provider.poll, entry.kind, pending.handle, cancel_event=cancel_event
            )
        else:
            result = self.retry_strategy.execute_with_retry(
                provider.create, entry.kind, properties, cancel_event=cancel_event
            )
            self.state_store.record_pending(PendingOperation(
                entry_id=entry.entry_id,
                logical_id=entry.logical_id,
                kind=entry.kind,
                action="create",
                handle=result.handle,
            ))

        result = self._wait_for(entry, provider, result, cancel_event)
        if self.catalog.is_failed(entry.kind, result.status):
            self.state_store.clear_pending(entry.entry_id)
        self._check_succeeded(entry, result)

        record = StateRecord(
            logical_id=entry.logical_id,
            kind=entry.kind,
            physical_id=result.physical_id,
            properties=properties,
            outputs=result.outputs,
            dependencies=entry.node.resource_dependencies,
            template_hash=entry.node.template_hash,
        )

        if entry.phase == ReplacePhase.CREATE_NEW and entry.prior is not None:
            self.state_store.swap(entry.logical_id, record, PendingOperation(
                entry_id=f"{entry.logical_id}#old",
                logical_id=entry.logical_id,
                kind=entry.prior.kind,
                action="retire",
                handle=entry.prior.physical_id,
                properties=entry.prior.properties,
            ))
        else:
            self.state_store.put(entry.logical_id, record)
        return result.physical_id

    def _update(
        self,
        entry: ChangeSetEntry,
        change_set: ChangeSet,
        provider: BaseProvider,
        cancel_event: threading.Event
    ) -> str:
        prior = entry.prior
        properties = self._resolve(entry, change_set)

        result = self.retry_strategy.execute_with_retry(
            provider.update, entry.kind, prior.physical_id, properties, prior.properties,
            cancel_event=cancel_event
        )
        result = self._wait_for(entry, provider, result, cancel_event)
        self._check_succeeded(entry, result)

        outputs = dict(prior.outputs)
        outputs.update(result.outputs)
        record = prior.model_copy(update={
            'properties': properties,
            'outputs': outputs,
            'dependencies': entry.node.resource_dependencies,
            'template_hash': entry.node.template_hash,
            'updated_at': datetime.utcnow(),
        })
        self.state_store.put(entry.logical_id, record)
        return prior.physical_id

    def _delete(self, entry: ChangeSetEntry, provider: BaseProvider, cancel_event: threading.Event) -> Optional[str]:
        if entry.prior is None:
            return self._delete_abandoned(entry, provider, cancel_event)

        physical_id = entry.prior.physical_id
        result = self.retry_strategy.execute_with_retry(
            provider.delete, entry.kind, physical_id, cancel_event=cancel_event
        )
        result = self._wait_for(entry, provider, result, cancel_event)
        self._check_succeeded(entry, result)

        self.state_store.delete(entry.logical_id)
        return physical_id

    def _delete_abandoned(
        self,
        entry: ChangeSetEntry,
        provider: BaseProvider,
        cancel_event: threading.Event
    ) -> Optional[str]:
        """Delete a resource whose create was started but never recorded."""
        pending = self.state_store.pending_operation(entry.entry_id)
        if pending is None:
            return None

        result = self.retry_strategy.execute_with_retry(
            provider.poll, entry.kind, pending.handle, cancel_event=cancel_event
        )
        result = self._wait_for(entry, provider, result, cancel_event)
        if self.catalog.is_failed(entry.kind, result.status) or not result.physical_id:
            logger.info(f"Interrupted create of {entry.logical_id} did not produce a resource")
            self.state_store.clear_pending(entry.entry_id)
            return None

        deletion = self.retry_strategy.execute_with_retry(
            provider.delete, entry.kind, result.physical_id, cancel_event=cancel_event
        )
        deletion = self._wait_for(entry, provider, deletion, cancel_event)
        self._check_succeeded(entry, deletion)
        self.state_store.clear_pending(entry.entry_id)
        return result.physical_id

    def _retire(self, entry: ChangeSetEntry, provider: BaseProvider, cancel_event: threading.Event) -> str:
        """Delete the old half of a replacement; the new record stays in place."""
        physical_id = entry.prior.physical_id
        result = self.retry_strategy.execute_with_retry(
            provider.delete, entry.kind, physical_id, cancel_event=cancel_event
        )
        result = self._wait_for(entry, provider, result, cancel_event)
        self._check_succeeded(entry, result)

        self.state_store.clear_pending(entry.entry_id)
        return physical_id

    def _is_terminal(self, kind: str, status: str) -> bool:
        return self.catalog.is_ready(kind, status) or self.catalog.is_failed(kind, status)

    def _wait_for(
        self,
        entry: ChangeSetEntry,
        provider: BaseProvider,
        result: ProvisionResult,
        cancel_event: threading.Event
    ) -> ProvisionResult:
        """Poll an operation until its status is terminal.

        Raises:
            ExecutionCancelledError: If the run is cancelled between polls
            OperationTimeoutError: If the polling timeout expires first
        """
        if self._is_terminal(entry.kind, result.status):
            return result

        for interval in self.polling.intervals():
            if cancel_event.wait(interval):
                raise ExecutionCancelledError(
                    f"Stopped waiting for {entry.describe()} (request {result.handle})"
                )
            result = self.retry_strategy.execute_with_retry(
                provider.poll, entry.kind, result.handle, cancel_event=cancel_event
            )
            if self._is_terminal(entry.kind, result.status):
                return result

        raise OperationTimeoutError(
            f"{entry.describe()} did not finish within {self.polling.timeout:.0f}s "
            f"(last status {result.status})",
            context=ErrorContext(
                resource_id=entry.logical_id,
                resource_type=entry.kind,
                request_id=result.handle,
            )
        )

    def _check_succeeded(self, entry: ChangeSetEntry, result: ProvisionResult) -> None:
        if self.catalog.is_failed(entry.kind, result.status):
            raise ProviderError(
                f"{entry.describe()} failed: {result.status_reason or result.status}",
                transient=False,
                context=ErrorContext(
                    resource_id=entry.logical_id,
                    resource_type=entry.kind,
                    physical_id=result.physical_id,
                    request_id=result.handle,
                )
            )
