"""State file data models."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


STATE_FORMAT_VERSION = "1.0"


class StateRecord(BaseModel):
    """Last-known state of one successfully provisioned resource."""

    logical_id: str = Field(..., description="Logical resource ID from the template")
    kind: str = Field(..., description="Resource type (e.g., AWS::CloudWatch::Alarm)")
    physical_id: str = Field(..., description="Provider-assigned identifier")
    properties: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved property snapshot sent to the provider"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Provider-reported attributes (ARNs, DNS names, ...)"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Logical IDs this resource depended on when applied"
    )
    template_hash: Optional[str] = Field(None, description="Hash of the applied declaration")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def attribute(self, name: str) -> Any:
        """Get a provider attribute, or None if the provider did not report it."""
        return self.outputs.get(name)


class PendingOperation(BaseModel):
    """A provider operation that was started but not yet confirmed.

    Kept so an interrupted run can resume polling instead of issuing
    the operation a second time.
    """

    entry_id: str = Field(..., description="Change-set entry that started the operation")
    logical_id: str
    kind: str
    action: str = Field(..., description="create or retire")
    handle: str = Field(..., description="Physical ID or provider request handle")
    properties: Dict[str, Any] = Field(
        default_factory=dict, description="Properties of the resource being retired"
    )
    started_at: datetime = Field(default_factory=datetime.utcnow)


class StackState(BaseModel):
    """Persisted state document for one stack."""

    version: str = Field(STATE_FORMAT_VERSION, description="State file format version")
    stack_name: str = Field(..., description="Stack name")
    serial: int = Field(0, description="Incremented on every write")
    lineage: str = Field(..., description="Random ID fixed when the state was created")
    template_hash: Optional[str] = Field(None, description="Hash of the last applied template")
    records: Dict[str, StateRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Evaluated stack outputs")
    exports: Dict[str, Any] = Field(default_factory=dict, description="Exported output values")
    pending: Dict[str, PendingOperation] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def get_dependents(self, logical_id: str) -> List[str]:
        """Get records that depended on the given resource when applied."""
        return sorted(
            record.logical_id
            for record in self.records.values()
            if logical_id in record.dependencies
        )
