"""Resource-kind catalog: mutability, naming and terminal statuses per kind."""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

SUCCESS_STATUSES = frozenset({"SUCCESS"})
FAILED_STATUSES = frozenset({"FAILED", "CANCEL_COMPLETE"})


@dataclass(frozen=True)
class ResourceKindSpec:
    """Static facts about one resource kind."""

    kind: str
    replace_only: FrozenSet[str] = frozenset()
    identifier_property: Optional[str] = None
    ready_statuses: FrozenSet[str] = field(default=SUCCESS_STATUSES)
    failed_statuses: FrozenSet[str] = field(default=FAILED_STATUSES)


# Properties whose change requires replacement, per kind
DEFAULT_SPECS = (
    ResourceKindSpec(
        kind="AWS::EC2::Instance",
        replace_only=frozenset({
            "AvailabilityZone", "ImageId", "KeyName", "SubnetId", "PrivateIpAddress",
            "NetworkInterfaces", "LaunchTemplate", "Tenancy", "SecurityGroups", "CpuOptions",
        }),
    ),
    ResourceKindSpec(
        kind="AWS::ElasticLoadBalancingV2::LoadBalancer",
        replace_only=frozenset({"Name", "Scheme", "Type"}),
        identifier_property="Name",
    ),
    ResourceKindSpec(
        kind="AWS::ElasticLoadBalancingV2::TargetGroup",
        replace_only=frozenset({"Name", "Port", "Protocol", "ProtocolVersion", "TargetType", "VpcId"}),
        identifier_property="Name",
    ),
    ResourceKindSpec(
        kind="AWS::ElasticLoadBalancingV2::Listener",
        replace_only=frozenset({"LoadBalancerArn"}),
    ),
    ResourceKindSpec(
        kind="AWS::EC2::LaunchTemplate",
        replace_only=frozenset({"LaunchTemplateName"}),
        identifier_property="LaunchTemplateName",
    ),
    ResourceKindSpec(
        kind="AWS::AutoScaling::AutoScalingGroup",
        replace_only=frozenset({"AutoScalingGroupName", "InstanceId"}),
        identifier_property="AutoScalingGroupName",
    ),
    ResourceKindSpec(
        kind="AWS::AutoScaling::ScalingPolicy",
        replace_only=frozenset({"AutoScalingGroupName"}),
    ),
    ResourceKindSpec(
        kind="AWS::CloudWatch::Alarm",
        replace_only=frozenset({"AlarmName"}),
        identifier_property="AlarmName",
    ),
    ResourceKindSpec(
        kind="AWS::EC2::SecurityGroup",
        replace_only=frozenset({"GroupName", "GroupDescription", "VpcId"}),
        identifier_property="GroupName",
    ),
    ResourceKindSpec(
        kind="AWS::S3::Bucket",
        replace_only=frozenset({"BucketName"}),
        identifier_property="BucketName",
    ),
)


class ResourceKindCatalog:
    """Lookup of ResourceKindSpec by kind.

    Unknown kinds get a spec where every property is mutable in place and
    only the generic operation statuses are terminal.
    """

    def __init__(self, specs: Optional[Iterable[ResourceKindSpec]] = None, include_defaults: bool = True):
        self._specs: Dict[str, ResourceKindSpec] = {}
        if include_defaults:
            for spec in DEFAULT_SPECS:
                self.register(spec)
        for spec in specs or ():
            self.register(spec)

    def register(self, spec: ResourceKindSpec) -> None:
        self._specs[spec.kind] = spec

    def get(self, kind: str) -> ResourceKindSpec:
        return self._specs.get(kind) or ResourceKindSpec(kind=kind)

    def kinds(self) -> List[str]:
        return sorted(self._specs)

    def replacement_properties(self, kind: str, changed: Iterable[str]) -> List[str]:
        """Get the changed properties that cannot be updated in place."""
        spec = self.get(kind)
        return sorted(name for name in changed if name in spec.replace_only)

    def identifier(self, kind: str, properties: Dict[str, Any]) -> Optional[str]:
        """Get the external name a resource claims, if its kind has one and it is set."""
        name_property = self.get(kind).identifier_property
        if not name_property:
            return None
        value = properties.get(name_property)
        return value if isinstance(value, str) else None

    def is_ready(self, kind: str, status: str) -> bool:
        return status in self.get(kind).ready_statuses

    def is_failed(self, kind: str, status: str) -> bool:
        return status in self.get(kind).failed_statuses
