"""Planner producing ordered change sets from desired and recorded state."""

import heapq
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from stackweave.orchestrator.dependency_graph import DependencyGraph, ResourceNode
from stackweave.providers.catalog import ResourceKindCatalog
from stackweave.state.models import PendingOperation, StateRecord
from stackweave.template.models import Template
from stackweave.template.references import Resolver, contains_unknown
from stackweave.utils.errors import CycleError, PlanConflictError
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)

OLD_SUFFIX = "#old"
_MISSING = object()


class ChangeAction(Enum):
    """Action planned for a resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no_op"


class ReplacePhase(Enum):
    """Half of a replacement an entry performs."""
    CREATE_NEW = "create_new"
    DELETE_OLD = "delete_old"


@dataclass
class ChangeSetEntry:
    """One step of a change set."""

    entry_id: str
    logical_id: str
    kind: str
    action: ChangeAction
    prerequisites: List[str] = field(default_factory=list)
    phase: Optional[ReplacePhase] = None
    node: Optional[ResourceNode] = None
    prior: Optional[StateRecord] = None
    changed_properties: List[str] = field(default_factory=list)
    planned: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def is_delete(self) -> bool:
        return self.action == ChangeAction.DELETE or self.phase == ReplacePhase.DELETE_OLD

    def describe(self) -> str:
        """Short human-readable form, e.g. ``replace (delete old) Listener``."""
        label = self.action.value
        if self.phase == ReplacePhase.DELETE_OLD and self.action == ChangeAction.REPLACE:
            label = "replace (delete old)"
        elif self.phase == ReplacePhase.CREATE_NEW:
            label = "replace (create new)"
        return f"{label} {self.logical_id}"


@dataclass
class ChangeSet:
    """Ordered change set for one stack."""

    stack_name: str
    entries: List[ChangeSetEntry] = field(default_factory=list)
    template_hash: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    exports: Dict[str, Any] = field(default_factory=dict)
    template: Optional[Template] = None
    state_serial: Optional[int] = None  # State Store serial the plan was made against
    created_at: datetime = field(default_factory=datetime.utcnow)

    def get(self, entry_id: str) -> Optional[ChangeSetEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def index_of(self, entry_id: str) -> int:
        for index, entry in enumerate(self.entries):
            if entry.entry_id == entry_id:
                return index
        raise KeyError(entry_id)

    def actionable(self) -> List[ChangeSetEntry]:
        """Entries that change something (NoOp entries excluded)."""
        return [entry for entry in self.entries if entry.action != ChangeAction.NO_OP]

    def has_changes(self) -> bool:
        return bool(self.actionable())

    def get_summary(self) -> Dict[str, int]:
        """Count resources by planned action; a replacement counts once."""
        summary = {action.value: 0 for action in ChangeAction}
        for entry in self.entries:
            if entry.action == ChangeAction.REPLACE and entry.phase == ReplacePhase.DELETE_OLD:
                continue
            summary[entry.action.value] += 1
        return summary


def diff_properties(previous: Dict[str, Any], desired: Dict[str, Any]) -> List[str]:
    """
    Compare two property bags key by key.

    A desired value containing KNOWN_AFTER_APPLY always counts as changed.

    Returns:
        Sorted names of properties that differ
    """
    changed = []
    for key in set(previous) | set(desired):
        new_value = desired.get(key, _MISSING)
        if new_value is not _MISSING and contains_unknown(new_value):
            changed.append(key)
        elif previous.get(key, _MISSING) != new_value:
            changed.append(key)
    return sorted(changed)


class Planner:
    """Creates change sets by comparing a desired graph with recorded state."""

    def __init__(self, catalog: Optional[ResourceKindCatalog] = None):
        """Initialize planner.

        Args:
            catalog: Resource-kind catalog deciding which changes need replacement
        """
        self.catalog = catalog or ResourceKindCatalog()
        self.logger = get_logger(__name__)

    def create_plan(
        self,
        graph: DependencyGraph,
        snapshot: Dict[str, StateRecord],
        parameters: Optional[Dict[str, Any]] = None,
        exports: Optional[Dict[str, Any]] = None,
        stack_name: str = "stack",
        template_hash: Optional[str] = None,
        pending: Optional[Dict[str, PendingOperation]] = None,
        template: Optional[Template] = None
    ) -> ChangeSet:
        """Create a change set.

        Args:
            graph: Validated desired dependency graph
            snapshot: Recorded state, keyed by logical ID
            parameters: Resolved parameter values
            exports: Values exported by other stacks
            stack_name: Stack the plan is for
            template_hash: Hash of the desired template
            pending: Unconfirmed provider operations from earlier runs
            template: Template the graph was built from

        Returns:
            ChangeSet in execution order

        Raises:
            UnresolvedReferenceError: If an import or attribute cannot be satisfied
            PlanConflictError: If two owners would claim one external identifier
            CycleError: If entry prerequisites form a cycle
        """
        parameters = parameters or {}
        exports = exports or {}
        pending = pending or {}

        self.logger.info(f"Planning stack {stack_name}...")

        entries = self._diff(graph, snapshot, parameters, exports, pending)
        self._link_prerequisites(graph, snapshot, entries)
        self._check_conflicts(entries)

        change_set = ChangeSet(
            stack_name=stack_name,
            entries=self._order(entries),
            template_hash=template_hash,
            parameters=dict(parameters),
            exports=dict(exports),
            template=template,
        )

        summary = change_set.get_summary()
        self.logger.info(
            f"Plan for {stack_name}: {summary['create']} create, {summary['update']} update, "
            f"{summary['replace']} replace, {summary['delete']} delete, "
            f"{summary['no_op']} unchanged"
        )
        return change_set

    def _diff(
        self,
        graph: DependencyGraph,
        snapshot: Dict[str, StateRecord],
        parameters: Dict[str, Any],
        exports: Dict[str, Any],
        pending: Dict[str, PendingOperation]
    ) -> Dict[str, ChangeSetEntry]:
        entries: Dict[str, ChangeSetEntry] = {}
        unknown_refs: Set[str] = set()
        unknown_attrs: Set[str] = set()
        resolver = Resolver(
            parameters,
            snapshot.get,
            exports,
            unknown_refs=unknown_refs,
            unknown_attrs=unknown_attrs,
        )

        for logical_id in graph.topological_sort():
            node = graph.nodes[logical_id]
            prior = snapshot.get(logical_id)
            planned = resolver.resolve(node.properties, logical_id)

            if prior is None:
                action, changed, reason = ChangeAction.CREATE, sorted(planned), "Not yet created"
                if logical_id in pending:
                    reason = "Resume interrupted create"
            elif prior.kind != node.kind:
                action, changed = ChangeAction.REPLACE, ["Type"]
                reason = f"Type changed from {prior.kind}"
            else:
                changed = diff_properties(prior.properties, planned)
                replace_props = self.catalog.replacement_properties(node.kind, changed)
                if not changed:
                    action, reason = ChangeAction.NO_OP, None
                elif replace_props:
                    action = ChangeAction.REPLACE
                    reason = f"Requires replacement: {', '.join(replace_props)}"
                else:
                    action = ChangeAction.UPDATE
                    reason = f"Changed: {', '.join(changed)}"

            if action in (ChangeAction.CREATE, ChangeAction.REPLACE):
                unknown_refs.add(logical_id)
            elif action == ChangeAction.UPDATE:
                unknown_attrs.add(logical_id)

            entry = ChangeSetEntry(
                entry_id=logical_id,
                logical_id=logical_id,
                kind=node.kind,
                action=action,
                node=node,
                prior=prior,
                changed_properties=changed,
                planned=planned,
                reason=reason,
            )
            entries[logical_id] = entry

            if action == ChangeAction.REPLACE:
                old_id = logical_id + OLD_SUFFIX
                if old_id in pending:
                    raise PlanConflictError(
                        f"Resource '{logical_id}' still has an unfinished replacement",
                        claimants=[logical_id, old_id],
                        suggestions=["Apply the current template first to finish the earlier replacement"]
                    )
                entry.phase = ReplacePhase.CREATE_NEW
                entries[old_id] = ChangeSetEntry(
                    entry_id=old_id,
                    logical_id=logical_id,
                    kind=prior.kind,
                    action=ChangeAction.REPLACE,
                    phase=ReplacePhase.DELETE_OLD,
                    prior=prior,
                    planned=dict(prior.properties),
                    reason=f"Delete replaced {prior.physical_id}",
                )

        for logical_id in sorted(snapshot):
            if logical_id in graph.nodes:
                continue
            prior = snapshot[logical_id]
            entries[logical_id] = ChangeSetEntry(
                entry_id=logical_id,
                logical_id=logical_id,
                kind=prior.kind,
                action=ChangeAction.DELETE,
                prior=prior,
                planned=dict(prior.properties),
                reason="No longer declared",
            )

        for entry_id, operation in sorted(pending.items()):
            if entry_id in entries:
                continue
            if operation.action == "retire":
                entries[entry_id] = ChangeSetEntry(
                    entry_id=entry_id,
                    logical_id=operation.logical_id,
                    kind=operation.kind,
                    action=ChangeAction.DELETE,
                    phase=ReplacePhase.DELETE_OLD,
                    prior=StateRecord(
                        logical_id=operation.logical_id,
                        kind=operation.kind,
                        physical_id=operation.handle,
                        properties=dict(operation.properties),
                    ),
                    planned=dict(operation.properties),
                    reason="Finish retiring replaced resource",
                )
            elif operation.logical_id not in graph.nodes:
                entries[entry_id] = ChangeSetEntry(
                    entry_id=entry_id,
                    logical_id=operation.logical_id,
                    kind=operation.kind,
                    action=ChangeAction.DELETE,
                    reason="Delete resource left by an interrupted create",
                )

        return entries

    def _link_prerequisites(
        self,
        graph: DependencyGraph,
        snapshot: Dict[str, StateRecord],
        entries: Dict[str, ChangeSetEntry]
    ) -> None:
        old_dependents: Dict[str, Set[str]] = {}
        for record in snapshot.values():
            for dep_id in record.dependencies:
                old_dependents.setdefault(dep_id, set()).add(record.logical_id)

        def migrated(dependent_ids) -> Set[str]:
            """Entries that must finish before a resource those dependents used is removed."""
            result = set()
            for dependent_id in dependent_ids:
                for candidate in (dependent_id, dependent_id + OLD_SUFFIX):
                    if candidate in entries:
                        result.add(candidate)
            return result

        for entry_id, entry in entries.items():
            if entry.is_delete:
                prerequisites = migrated(old_dependents.get(entry.logical_id, ()))
                if entry.phase == ReplacePhase.DELETE_OLD:
                    # Both entries lease the same logical ID
                    if entry.logical_id in entries:
                        prerequisites.add(entry.logical_id)
                    if entry.logical_id in graph.nodes:
                        prerequisites |= migrated(graph.get_dependents(entry.logical_id))
            else:
                prerequisites = {
                    dep_id for dep_id in entry.node.resource_dependencies if dep_id in entries
                }
            prerequisites.discard(entry_id)
            entry.prerequisites = sorted(prerequisites)

    def _check_conflicts(self, entries: Dict[str, ChangeSetEntry]) -> None:
        claims: Dict[Tuple[str, str], str] = {}
        for entry_id in sorted(entries):
            entry = entries[entry_id]
            if entry.is_delete and entry.prior is None:
                continue
            name = self.catalog.identifier(entry.kind, entry.planned)
            if name is None:
                continue
            key = (entry.kind, name)
            if key in claims:
                owner = claims[key]
                raise PlanConflictError(
                    f"{entry.kind} name '{name}' is claimed by both '{owner}' and '{entry_id}'",
                    claimants=[owner, entry_id],
                    suggestions=[
                        "Give each resource a distinct name",
                        "Change the name when a change requires replacement",
                    ]
                )
            claims[key] = entry_id

    def _order(self, entries: Dict[str, ChangeSetEntry]) -> List[ChangeSetEntry]:
        """Kahn ordering over entry prerequisites, ties broken by entry ID."""
        remaining = {entry_id: set(entry.prerequisites) for entry_id, entry in entries.items()}
        dependents: Dict[str, Set[str]] = {entry_id: set() for entry_id in entries}
        for entry_id, prerequisites in remaining.items():
            for prerequisite in prerequisites:
                dependents[prerequisite].add(entry_id)

        heap = [entry_id for entry_id, prerequisites in remaining.items() if not prerequisites]
        heapq.heapify(heap)
        ordered = []
        while heap:
            entry_id = heapq.heappop(heap)
            ordered.append(entries[entry_id])
            for dependent_id in dependents[entry_id]:
                remaining[dependent_id].discard(entry_id)
                if not remaining[dependent_id]:
                    heapq.heappush(heap, dependent_id)
            del remaining[entry_id]

        if remaining:
            raise CycleError(self._find_cycle(remaining))
        return ordered

    def _find_cycle(self, remaining: Dict[str, Set[str]]) -> List[str]:
        path: List[str] = []
        on_path: Set[str] = set()
        current = min(remaining)
        while current not in on_path:
            path.append(current)
            on_path.add(current)
            current = min(dep for dep in remaining[current] if dep in remaining)
        return path[path.index(current):] + [current]
