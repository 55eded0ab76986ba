"""Drift detection between recorded state and live resources."""

import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field

from stackweave.providers.base import ProviderRegistry
from stackweave.state.manager import StateStore
from stackweave.state.models import StateRecord
from stackweave.utils.errors import ReconcileError
from stackweave.utils.logging import get_logger
from stackweave.utils.retry import RetryStrategy

logger = get_logger(__name__)


class DriftType(Enum):
    """Types of drift."""
    MISSING = "missing"  # Resource in state but gone from the cloud
    MODIFIED = "modified"  # Resource properties differ
    UNKNOWN = "unknown"  # Live state could not be read


class FieldDifference(BaseModel):
    """One differing field of a drifted resource."""

    path: str = Field(..., description="Dotted path of the field, e.g. Tags.0.Value")
    expected: Any = Field(None, description="Value in the State Store")
    actual: Any = Field(None, description="Live value")


class DriftEvent(BaseModel):
    """Drift detected on a single resource."""

    resource_id: str = Field(..., description="Logical resource ID")
    resource_type: str = Field(..., description="Resource type")
    physical_id: str = Field(..., description="Provider identifier")
    drift_type: DriftType = Field(..., description="Type of drift detected")
    differences: List[FieldDifference] = Field(default_factory=list)
    message: Optional[str] = None
    detected_at: datetime = Field(default_factory=datetime.utcnow)


class DriftReport(BaseModel):
    """Result of one drift detection pass."""

    stack_name: str
    events: List[DriftEvent] = Field(default_factory=list)
    total_resources_checked: int = 0
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    def has_drift(self) -> bool:
        return any(event.drift_type != DriftType.UNKNOWN for event in self.events)

    def get_by_type(self, drift_type: DriftType) -> List[DriftEvent]:
        return [event for event in self.events if event.drift_type == drift_type]

    def drifted_resources(self) -> List[str]:
        return [event.resource_id for event in self.events if event.drift_type != DriftType.UNKNOWN]


def _scalar_equal(expected: Any, actual: Any) -> bool:
    if expected == actual:
        return True
    # Providers often echo numbers and booleans back as strings
    return str(expected).lower() == str(actual).lower()


def compare_fields(expected: Any, actual: Any, path: str = "") -> List[FieldDifference]:
    """
    Compare a stored value with a live value.

    Only keys present in the stored value are compared, so attributes the
    provider adds on its own never count as drift.

    Returns:
        Differences with dotted paths
    """
    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            return [FieldDifference(path=path, expected=expected, actual=actual)]
        differences = []
        for key in sorted(expected):
            child = f"{path}.{key}" if path else str(key)
            if key not in actual:
                differences.append(FieldDifference(path=child, expected=expected[key], actual=None))
            else:
                differences.extend(compare_fields(expected[key], actual[key], child))
        return differences

    if isinstance(expected, list):
        if not isinstance(actual, list) or len(actual) != len(expected):
            return [FieldDifference(path=path, expected=expected, actual=actual)]
        differences = []
        for index, (left, right) in enumerate(zip(expected, actual)):
            differences.extend(compare_fields(left, right, f"{path}.{index}" if path else str(index)))
        return differences

    if not _scalar_equal(expected, actual):
        return [FieldDifference(path=path, expected=expected, actual=actual)]
    return []


class DriftDetector:
    """Compares live resources with the State Store. Never changes either."""

    def __init__(
        self,
        providers: ProviderRegistry,
        state_store: StateStore,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        self.providers = providers
        self.state_store = state_store
        self.retry_strategy = retry_strategy or RetryStrategy()

    def detect(self) -> DriftReport:
        """Run one detection pass over every recorded resource."""
        snapshot = self.state_store.snapshot()
        report = DriftReport(stack_name=self.state_store.stack_name, total_resources_checked=len(snapshot))

        for logical_id in sorted(snapshot):
            event = self._check(snapshot[logical_id])
            if event is not None:
                report.events.append(event)

        logger.info(
            f"Drift check for {report.stack_name}: {len(report.drifted_resources())} of "
            f"{report.total_resources_checked} resources drifted"
        )
        return report

    def _check(self, record: StateRecord) -> Optional[DriftEvent]:
        try:
            provider = self.providers.for_kind(record.kind)
            live = self.retry_strategy.execute_with_retry(provider.describe, record.kind, record.physical_id)
        except ReconcileError as e:
            logger.warning(f"Could not read live state of {record.logical_id}: {e.message}")
            return DriftEvent(
                resource_id=record.logical_id,
                resource_type=record.kind,
                physical_id=record.physical_id,
                drift_type=DriftType.UNKNOWN,
                message=e.message,
            )

        if live is None:
            return DriftEvent(
                resource_id=record.logical_id,
                resource_type=record.kind,
                physical_id=record.physical_id,
                drift_type=DriftType.MISSING,
                message="Resource no longer exists",
            )

        differences = compare_fields(record.properties, live.properties)
        if not differences:
            return None
        return DriftEvent(
            resource_id=record.logical_id,
            resource_type=record.kind,
            physical_id=record.physical_id,
            drift_type=DriftType.MODIFIED,
            differences=differences,
            message=f"{len(differences)} field(s) differ",
        )

    def watch(
        self,
        interval: float,
        stop_event: Optional[threading.Event] = None,
        on_report: Optional[Callable[[DriftReport], None]] = None,
        iterations: Optional[int] = None
    ) -> Optional[DriftReport]:
        """
        Run detection periodically.

        Args:
            interval: Seconds between passes
            stop_event: Stops the loop when set
            on_report: Called with each report
            iterations: Stop after this many passes

        Returns:
            The last report produced
        """
        stop_event = stop_event or threading.Event()
        report = None
        count = 0
        while not stop_event.is_set():
            report = self.detect()
            count += 1
            if on_report:
                on_report(report)
            if iterations is not None and count >= iterations:
                break
            if stop_event.wait(interval):
                break
        return report
