"""In-memory simulated cloud, optionally backed by a local JSON file."""

import copy
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from stackweave.providers.base import BaseProvider, LiveResource, ProvisionResult
from stackweave.providers.catalog import ResourceKindCatalog
from stackweave.utils.errors import ProviderError, StateError
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)

ACCOUNT_ID = "123456789012"

IN_PROGRESS = "IN_PROGRESS"
SUCCESS = "SUCCESS"
FAILED = "FAILED"


def _matches(match: Dict[str, Any], properties: Dict[str, Any], physical_id: Optional[str]) -> bool:
    for key, value in match.items():
        actual = physical_id if key == "physical_id" else properties.get(key)
        if actual != value:
            return False
    return True


class _Fault:
    def __init__(self, operation, kind, match, error, status_reason, times):
        self.operation = operation
        self.kind = kind
        self.match = match or {}
        self.error = error
        self.status_reason = status_reason
        self.remaining = times

    def applies(self, operation: str, kind: str, properties: Dict[str, Any], physical_id: Optional[str]) -> bool:
        if self.remaining == 0 or operation != self.operation:
            return False
        if self.kind and self.kind != kind:
            return False
        return _matches(self.match, properties, physical_id)


class InMemoryProvider(BaseProvider):
    """Simulated cloud for tests and the local CLI mode.

    Every operation is asynchronous: it returns a handle that reports
    IN_PROGRESS for ``settle_polls`` polls before reaching a terminal
    status. Physical IDs and attributes (ARNs, DNS names, IPs, template
    version numbers) are generated per kind.
    """

    def __init__(
        self,
        settle_polls: int = 0,
        region: str = "us-east-1",
        catalog: Optional[ResourceKindCatalog] = None,
        state_file: Optional[str] = None
    ):
        """
        Initialize the simulated cloud.

        Args:
            settle_polls: Polls an operation stays in progress
            region: Region used in generated ARNs and DNS names
            catalog: Catalog used to pick names for named kinds
            state_file: JSON file to persist the simulated cloud in
        """
        self.settle_polls = settle_polls
        self.region = region
        self.catalog = catalog or ResourceKindCatalog()
        self.state_file = Path(state_file) if state_file else None
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.operations: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._counter = 0
        self._faults: List[_Fault] = []
        self._blocks: List[Tuple[str, Optional[str], Dict[str, Any], threading.Event]] = []
        self._lock = threading.RLock()

        if self.state_file and self.state_file.exists():
            self._load()

    # Test hooks

    def inject_fault(
        self,
        operation: str,
        error: Optional[Exception] = None,
        kind: Optional[str] = None,
        match: Optional[Dict[str, Any]] = None,
        times: int = 1,
        status_reason: str = "Simulated failure"
    ) -> None:
        """
        Make matching calls fail.

        Args:
            operation: create, update or delete
            error: Exception raised by the call; if None the operation is
                accepted and later ends in FAILED status
            kind: Only calls for this kind
            match: Property values (or ``physical_id``) the call must match
            times: Number of calls affected; -1 for every call
            status_reason: Reason reported with a FAILED status
        """
        with self._lock:
            self._faults.append(_Fault(operation, kind, match, error, status_reason, times))

    def block(self, operation: str, kind: Optional[str] = None, match: Optional[Dict[str, Any]] = None) -> threading.Event:
        """Make matching calls wait until the returned event is set."""
        event = threading.Event()
        with self._lock:
            self._blocks.append((operation, kind, match or {}, event))
        return event

    def modify(self, physical_id: str, changes: Dict[str, Any]) -> None:
        """Change a resource out of band, as a console user would."""
        with self._lock:
            if physical_id not in self.resources:
                raise KeyError(physical_id)
            self.resources[physical_id]["properties"].update(copy.deepcopy(changes))
            self._save()

    def remove(self, physical_id: str) -> None:
        """Delete a resource out of band."""
        with self._lock:
            self.resources.pop(physical_id, None)
            self._save()

    def count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for r in self.resources.values() if kind is None or r["kind"] == kind)

    # Provider operations

    def create(self, kind: str, properties: Dict[str, Any]) -> ProvisionResult:
        self._wait_if_blocked("create", kind, properties, None)
        with self._lock:
            fault = self._take_fault("create", kind, properties, None)
            physical_id = self._physical_id(kind, properties)
            if fault is None and physical_id in self.resources:
                raise ProviderError(
                    f"{kind} '{physical_id}' already exists",
                    suggestions=["Choose a different name"]
                )

            self.calls.append(("create", kind, physical_id))
            if fault is None:
                self.resources[physical_id] = {
                    "kind": kind,
                    "properties": copy.deepcopy(properties),
                    "outputs": self._attributes(kind, physical_id, properties),
                }
            return self._start("create", kind, physical_id, fault)

    def update(
        self,
        kind: str,
        physical_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProvisionResult:
        self._wait_if_blocked("update", kind, properties, physical_id)
        with self._lock:
            fault = self._take_fault("update", kind, properties, physical_id)
            resource = self.resources.get(physical_id)
            if resource is None:
                raise ProviderError(f"{kind} '{physical_id}' not found")

            self.calls.append(("update", kind, physical_id))
            if fault is None:
                resource["properties"] = copy.deepcopy(properties)
                if kind == "AWS::EC2::LaunchTemplate":
                    version = int(resource["outputs"]["LatestVersionNumber"]) + 1
                    resource["outputs"]["LatestVersionNumber"] = str(version)
            return self._start("update", kind, physical_id, fault)

    def delete(self, kind: str, physical_id: str) -> ProvisionResult:
        self._wait_if_blocked("delete", kind, {}, physical_id)
        with self._lock:
            fault = self._take_fault("delete", kind, {}, physical_id)
            self.calls.append(("delete", kind, physical_id))
            if fault is None:
                self.resources.pop(physical_id, None)
            return self._start("delete", kind, physical_id, fault)

    def poll(self, kind: str, handle: str) -> ProvisionResult:
        with self._lock:
            operation = self.operations.get(handle)
            if operation is None:
                raise ProviderError(f"Unknown request '{handle}'")

            if operation["status"] == IN_PROGRESS:
                if operation["remaining"] > 0:
                    operation["remaining"] -= 1
                else:
                    operation["status"] = FAILED if operation["reason"] else SUCCESS
                self._save()

            return self._result(handle, operation)

    def describe(self, kind: str, physical_id: str) -> Optional[LiveResource]:
        with self._lock:
            resource = self.resources.get(physical_id)
            if resource is None:
                return None
            return LiveResource(
                physical_id=physical_id,
                status=SUCCESS,
                properties=copy.deepcopy(resource["properties"]),
                outputs=dict(resource["outputs"]),
            )

    # Internals

    def _wait_if_blocked(self, operation, kind, properties, physical_id) -> None:
        with self._lock:
            events = [
                event for op, block_kind, match, event in self._blocks
                if op == operation
                and (block_kind is None or block_kind == kind)
                and _matches(match, properties, physical_id)
            ]
        for event in events:
            event.wait()

    def _take_fault(self, operation, kind, properties, physical_id) -> Optional[_Fault]:
        for fault in self._faults:
            if fault.applies(operation, kind, properties, physical_id):
                if fault.remaining > 0:
                    fault.remaining -= 1
                if fault.error is not None:
                    raise fault.error
                return fault
        return None

    def _start(self, action: str, kind: str, physical_id: str, fault: Optional[_Fault]) -> ProvisionResult:
        self._counter += 1
        handle = f"req-{self._counter:08d}"
        self.operations[handle] = {
            "action": action,
            "kind": kind,
            "physical_id": physical_id,
            "status": IN_PROGRESS,
            "remaining": self.settle_polls,
            "reason": fault.status_reason if fault else None,
        }
        self._save()
        logger.debug(f"Simulated {action} of {kind} {physical_id} ({handle})")
        return self._result(handle, self.operations[handle])

    def _result(self, handle: str, operation: Dict[str, Any]) -> ProvisionResult:
        resource = self.resources.get(operation["physical_id"], {})
        return ProvisionResult(
            handle=handle,
            status=operation["status"],
            physical_id=operation["physical_id"],
            outputs=dict(resource.get("outputs", {})),
            status_reason=operation["reason"] if operation["status"] == FAILED else None,
        )

    def _next_suffix(self, width: int = 17) -> str:
        self._counter += 1
        return f"{self._counter:0{width}x}"

    def _physical_id(self, kind: str, properties: Dict[str, Any]) -> str:
        name = self.catalog.identifier(kind, properties)
        arn_prefix = f"arn:aws:elasticloadbalancing:{self.region}:{ACCOUNT_ID}"

        if kind == "AWS::EC2::Instance":
            return f"i-{self._next_suffix()}"
        if kind == "AWS::EC2::LaunchTemplate":
            return f"lt-{self._next_suffix()}"
        if kind == "AWS::EC2::SecurityGroup":
            return f"sg-{self._next_suffix()}"
        if kind == "AWS::ElasticLoadBalancingV2::LoadBalancer":
            return f"{arn_prefix}:loadbalancer/app/{name or 'lb'}/{self._next_suffix(16)}"
        if kind == "AWS::ElasticLoadBalancingV2::TargetGroup":
            return f"{arn_prefix}:targetgroup/{name or 'tg'}/{self._next_suffix(16)}"
        if kind == "AWS::ElasticLoadBalancingV2::Listener":
            load_balancer = str(properties.get("LoadBalancerArn", "")).split(":loadbalancer/")[-1]
            return f"{arn_prefix}:listener/{load_balancer}/{self._next_suffix(16)}"
        if kind == "AWS::AutoScaling::ScalingPolicy":
            return (
                f"arn:aws:autoscaling:{self.region}:{ACCOUNT_ID}:scalingPolicy:"
                f"{self._next_suffix(8)}:policyName/{self._next_suffix(8)}"
            )
        if name:
            return name
        return f"{kind.split('::')[-1].lower()}-{self._next_suffix(12)}"

    def _attributes(self, kind: str, physical_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        if kind == "AWS::EC2::Instance":
            return {
                "InstanceId": physical_id,
                "PrivateIp": f"10.0.{self._counter % 250}.{self._counter % 200 + 10}",
                "PublicIp": f"203.0.113.{self._counter % 250 + 1}",
            }
        if kind == "AWS::ElasticLoadBalancingV2::LoadBalancer":
            name = properties.get("Name", "lb")
            full_name = physical_id.split(":loadbalancer/")[-1]
            return {
                "LoadBalancerArn": physical_id,
                "LoadBalancerFullName": full_name,
                "LoadBalancerName": name,
                "DNSName": f"{name}-{self._counter:010d}.{self.region}.elb.amazonaws.com",
                "CanonicalHostedZoneID": "Z35SXDOTRQ7X7K",
            }
        if kind == "AWS::ElasticLoadBalancingV2::TargetGroup":
            return {
                "TargetGroupArn": physical_id,
                "TargetGroupFullName": physical_id.split(":")[-1],
                "TargetGroupName": properties.get("Name"),
            }
        if kind == "AWS::ElasticLoadBalancingV2::Listener":
            return {"ListenerArn": physical_id}
        if kind == "AWS::EC2::LaunchTemplate":
            return {
                "LaunchTemplateId": physical_id,
                "LatestVersionNumber": "1",
                "DefaultVersionNumber": "1",
            }
        if kind == "AWS::EC2::SecurityGroup":
            return {"GroupId": physical_id}
        return {
            "Arn": f"arn:aws:{kind.split('::')[1].lower()}:{self.region}:{ACCOUNT_ID}:{physical_id}",
        }

    def _load(self) -> None:
        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Failed to load simulated cloud from {self.state_file}: {e}")
        self._counter = data.get("counter", 0)
        self.resources = data.get("resources", {})
        self.operations = data.get("operations", {})

    def _save(self) -> None:
        if not self.state_file:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.state_file.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            json.dump(
                {"counter": self._counter, "resources": self.resources, "operations": self.operations},
                f,
                indent=2,
                sort_keys=True,
            )
        temp_path.replace(self.state_file)
