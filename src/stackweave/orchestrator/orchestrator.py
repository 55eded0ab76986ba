"""Main orchestrator that coordinates planning, execution and rollback for a stack."""

import threading
from typing import Any, Callable, Dict, Optional, Tuple

from stackweave.config.models import Settings
from stackweave.orchestrator.dependency_graph import DependencyGraph, GraphBuilder
from stackweave.orchestrator.drift import DriftDetector, DriftReport
from stackweave.orchestrator.executor import ExecutionReport, Executor, ProgressCallback
from stackweave.orchestrator.leases import LeaseManager
from stackweave.orchestrator.planner import ChangeSet, Planner
from stackweave.orchestrator.rollback import RollbackManager, RollbackResult, RollbackStrategy
from stackweave.providers.base import ProviderRegistry
from stackweave.providers.catalog import ResourceKindCatalog
from stackweave.providers.cloudcontrol import CloudControlProvider
from stackweave.providers.memory import InMemoryProvider
from stackweave.state.manager import StateStore
from stackweave.template.models import Template
from stackweave.template.parameters import resolve_parameters
from stackweave.template.references import Resolver
from stackweave.utils.aws_client import AWSClientManager
from stackweave.utils.errors import StateError
from stackweave.utils.logging import get_logger
from stackweave.utils.retry import PollingBackoff, RetryStrategy

logger = get_logger(__name__)

DEFAULT_LOCAL_REGION = "us-east-1"


def build_providers(settings: Settings, catalog: ResourceKindCatalog) -> Tuple[ProviderRegistry, str]:
    """Create the provider registry selected by the settings.

    Args:
        settings: Loaded settings
        catalog: Resource-kind catalog

    Returns:
        Tuple of (registry, region)
    """
    if settings.provider == "cloudcontrol":
        client_manager = AWSClientManager(profile=settings.profile, region=settings.region)
        region = settings.region or client_manager.get_region()
        return ProviderRegistry(default=CloudControlProvider(client_manager)), region

    region = settings.region or DEFAULT_LOCAL_REGION
    provider = InMemoryProvider(region=region, catalog=catalog, state_file=settings.local_cloud_file)
    return ProviderRegistry(default=provider), region


class StackOrchestrator:
    """Coordinates planning, execution, rollback and drift detection for one stack."""

    def __init__(
        self,
        stack_name: str,
        state_store: StateStore,
        providers: ProviderRegistry,
        catalog: Optional[ResourceKindCatalog] = None,
        leases: Optional[LeaseManager] = None,
        parallelism: int = 4,
        retry_strategy: Optional[RetryStrategy] = None,
        polling: Optional[PollingBackoff] = None,
        region: Optional[str] = None,
        static_imports: Optional[Dict[str, Any]] = None
    ):
        """Initialize stack orchestrator.

        Args:
            stack_name: Stack to manage
            state_store: State store for the stack
            providers: Provider registry
            catalog: Resource-kind catalog
            leases: Lease manager shared by runs in this process
            parallelism: Maximum number of entries in flight
            retry_strategy: Retry policy for transient provider errors
            polling: Backoff while waiting for provider operations
            region: Value of the AWS::Region pseudo parameter
            static_imports: Exports owned by stacks outside the state directory
        """
        self.stack_name = stack_name
        self.state_store = state_store
        self.providers = providers
        self.catalog = catalog or ResourceKindCatalog()
        self.region = region
        self.static_imports = dict(static_imports or {})
        self.retry_strategy = retry_strategy or RetryStrategy()

        self.graph_builder = GraphBuilder()
        self.planner = Planner(self.catalog)
        self.executor = Executor(
            providers=providers,
            state_store=state_store,
            catalog=self.catalog,
            leases=leases,
            parallelism=parallelism,
            retry_strategy=self.retry_strategy,
            polling=polling,
        )
        self.rollback_manager = RollbackManager(executor=self.executor, planner=self.planner)
        self.drift_detector = DriftDetector(providers, state_store, self.retry_strategy)

        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, stack_name: str) -> "StackOrchestrator":
        """Build an orchestrator wired up from configuration."""
        catalog = ResourceKindCatalog()
        providers, region = build_providers(settings, catalog)
        return cls(
            stack_name=stack_name,
            state_store=StateStore(settings.state_dir, stack_name),
            providers=providers,
            catalog=catalog,
            leases=LeaseManager(default_ttl=settings.lease_ttl),
            parallelism=settings.parallelism,
            retry_strategy=settings.retry.to_strategy(),
            polling=settings.polling.to_backoff(),
            region=region,
            static_imports=settings.imports,
        )

    def resolve_parameters(self, template: Template, supplied: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return resolve_parameters(template, supplied, stack_name=self.stack_name, region=self.region)

    def exports(self) -> Dict[str, Any]:
        """Values available to ImportValue: static imports overlaid by other stacks' exports."""
        exports = dict(self.static_imports)
        for name, value in self.state_store.exports().items():
            if name in exports and exports[name] != value:
                self.logger.warning(f"Export '{name}' from the state directory overrides the configured import")
            exports[name] = value
        return exports

    def plan(self, template: Template, parameters: Optional[Dict[str, Any]] = None) -> ChangeSet:
        """Create a change set for a template.

        Args:
            template: Parsed template
            parameters: Supplied parameter values

        Returns:
            ChangeSet
        """
        self.logger.info(f"Planning stack {self.stack_name}...")
        state = self.state_store.load()
        graph = self.graph_builder.build(template)

        change_set = self.planner.create_plan(
            graph,
            self.state_store.snapshot(),
            parameters=self.resolve_parameters(template, parameters),
            exports=self.exports(),
            stack_name=self.stack_name,
            template_hash=template.template_hash,
            pending=self.state_store.pending_operations(),
            template=template,
        )
        change_set.state_serial = state.serial
        return change_set

    def plan_destroy(self) -> ChangeSet:
        """Create a change set deleting every resource of the stack."""
        self.logger.info(f"Planning destruction of stack {self.stack_name}...")
        state = self.state_store.load()
        change_set = self.planner.create_plan(
            DependencyGraph(),
            self.state_store.snapshot(),
            stack_name=self.stack_name,
            pending=self.state_store.pending_operations(),
        )
        change_set.state_serial = state.serial
        return change_set

    def apply(
        self,
        change_set: ChangeSet,
        rollback_strategy: RollbackStrategy = RollbackStrategy.NONE,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[ExecutionReport, Optional[RollbackResult]]:
        """Execute a change set under the stack's state lock.

        Args:
            change_set: Change set from plan() or plan_destroy()
            rollback_strategy: What to do when the run does not succeed
            progress_callback: Optional progress callback
            cancel_event: Run-level cancellation signal

        Returns:
            Tuple of (ExecutionReport, RollbackResult or None)

        Raises:
            StateError: If the state changed since the change set was planned
        """
        self.logger.info(f"Applying change set to {self.stack_name} (rollback={rollback_strategy.value})...")
        self.state_store.lock()
        try:
            state = self.state_store.load()
            if change_set.state_serial is not None and state.serial != change_set.state_serial:
                raise StateError(
                    f"State of stack '{self.stack_name}' changed since the plan was made "
                    f"(serial {change_set.state_serial} -> {state.serial})",
                    suggestions=["Run plan again"]
                )

            records_before = self.state_store.snapshot()
            report = self.executor.execute(change_set, progress_callback, cancel_event)

            if report.is_success():
                self._finalize(change_set)
                return report, None

            if rollback_strategy == RollbackStrategy.AUTOMATIC and report.touched():
                rollback_result = self.rollback_manager.rollback(report, records_before, progress_callback)
                return report, rollback_result
            return report, None
        finally:
            self.state_store.unlock()

    def deploy(
        self,
        template: Template,
        parameters: Optional[Dict[str, Any]] = None,
        rollback_strategy: RollbackStrategy = RollbackStrategy.NONE,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[ChangeSet, ExecutionReport, Optional[RollbackResult]]:
        """Plan and apply in one step.

        Returns:
            Tuple of (ChangeSet, ExecutionReport, RollbackResult or None)
        """
        change_set = self.plan(template, parameters)
        if not change_set.has_changes():
            self.logger.info("No changes to deploy")
        report, rollback_result = self.apply(change_set, rollback_strategy, progress_callback, cancel_event)
        return change_set, report, rollback_result

    def destroy(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ExecutionReport:
        """Plan and execute destruction in one step."""
        report, _ = self.apply(self.plan_destroy(), progress_callback=progress_callback, cancel_event=cancel_event)
        return report

    def drift(self) -> DriftReport:
        """Run one drift detection pass."""
        self.state_store.load()
        return self.drift_detector.detect()

    def watch_drift(
        self,
        interval: float,
        stop_event: Optional[threading.Event] = None,
        on_report: Optional[Callable[[DriftReport], None]] = None,
        iterations: Optional[int] = None
    ) -> Optional[DriftReport]:
        self.state_store.load()
        return self.drift_detector.watch(interval, stop_event, on_report, iterations)

    def outputs(self) -> Dict[str, Any]:
        """Get the stack outputs recorded by the last successful apply."""
        self.state_store.load()
        return self.state_store.outputs()

    def _finalize(self, change_set: ChangeSet) -> None:
        """Record outputs, exports and the template hash after a successful run."""
        template = change_set.template
        if template is None:
            self.state_store.set_outputs({}, {})
            self.state_store.set_template_hash(None)
            return

        resolver = Resolver(change_set.parameters, self.state_store.get, change_set.exports, strict=True)
        outputs: Dict[str, Any] = {}
        exports: Dict[str, Any] = {}
        for name, output in template.outputs.items():
            value = resolver.resolve(output.value, f"Output {name}")
            outputs[name] = value
            if output.export_name is not None:
                exports[resolver.resolve(output.export_name, f"Output {name}")] = value

        self.state_store.set_outputs(outputs, exports)
        self.state_store.set_template_hash(change_set.template_hash)
        self.logger.info(f"Recorded {len(outputs)} output(s) and {len(exports)} export(s) for {self.stack_name}")
