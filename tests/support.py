"""Shared builders for tests."""

from typing import Any, Dict, List, Optional, Tuple

from stackweave.orchestrator.executor import Executor
from stackweave.orchestrator.leases import LeaseManager
from stackweave.orchestrator.orchestrator import StackOrchestrator
from stackweave.orchestrator.planner import ChangeSet
from stackweave.providers.base import BaseProvider, ProviderRegistry
from stackweave.providers.catalog import ResourceKindCatalog, ResourceKindSpec
from stackweave.state.manager import StateStore
from stackweave.utils.retry import PollingBackoff, RetryStrategy

THING = "Test::Thing"

# Values the autoscaling template imports from the network stack
NETWORK_IMPORTS = {
    "PublicSubnet1": "subnet-0public1",
    "PublicSubnet2": "subnet-0public2",
    "PrivateSubnet1": "subnet-0private1",
    "PrivateSubnet2": "subnet-0private2",
    "BastionSecurityGroupId": "sg-0bastion",
    "ALBSecurityGroupId": "sg-0alb",
    "AutoscalingSecurityGroupId": "sg-0asg",
    "VPCId": "vpc-0main",
}


def fast_retry(max_retries: int = 3) -> RetryStrategy:
    return RetryStrategy(max_retries=max_retries, base_delay=0.001, max_delay=0.001, jitter=False,
                         sleep=lambda _: None)


def fast_polling(timeout: float = 5.0) -> PollingBackoff:
    return PollingBackoff(initial_interval=0.001, max_interval=0.005, timeout=timeout)


def thing_catalog() -> ResourceKindCatalog:
    """Catalog where Test::Thing must be replaced when its Zone changes."""
    return ResourceKindCatalog([
        ResourceKindSpec(kind=THING, replace_only=frozenset({"Zone"})),
        ResourceKindSpec(kind="Test::Named", identifier_property="Name"),
    ])


def make_executor(
    state_store: StateStore,
    provider: BaseProvider,
    catalog: Optional[ResourceKindCatalog] = None,
    leases: Optional[LeaseManager] = None,
    parallelism: int = 4,
    polling: Optional[PollingBackoff] = None
) -> Executor:
    return Executor(
        providers=ProviderRegistry(default=provider),
        state_store=state_store,
        catalog=catalog or thing_catalog(),
        leases=leases,
        parallelism=parallelism,
        retry_strategy=fast_retry(),
        polling=polling or fast_polling(),
    )


def make_orchestrator(
    state_store: StateStore,
    provider: BaseProvider,
    catalog: Optional[ResourceKindCatalog] = None,
    imports: Optional[Dict[str, Any]] = None,
    parallelism: int = 4,
    polling: Optional[PollingBackoff] = None
) -> StackOrchestrator:
    return StackOrchestrator(
        stack_name=state_store.stack_name,
        state_store=state_store,
        providers=ProviderRegistry(default=provider),
        catalog=catalog or thing_catalog(),
        parallelism=parallelism,
        retry_strategy=fast_retry(),
        polling=polling or fast_polling(),
        region="us-east-1",
        static_imports=imports,
    )


def actions(change_set: ChangeSet) -> List[Tuple[str, str]]:
    """(entry_id, action) pairs in execution order."""
    return [(entry.entry_id, entry.action.value) for entry in change_set.entries]
