"""Tests for the change-set executor."""

import threading
import time

from stackweave.orchestrator.dependency_graph import ResourceStatus, build_graph
from stackweave.orchestrator.executor import ExecutionStatus
from stackweave.orchestrator.leases import LeaseManager
from stackweave.orchestrator.planner import Planner
from stackweave.providers.memory import InMemoryProvider
from stackweave.state.models import PendingOperation
from stackweave.template.loader import load_template_string
from stackweave.utils.errors import LeaseConflictError, OperationTimeoutError, ProviderError

from support import THING, fast_polling, make_executor, thing_catalog

CHAIN = """
Resources:
  A:
    Type: Test::Thing
    Properties:
      Name: a
  B:
    Type: Test::Thing
    Properties:
      Name: b
      Parent: !GetAtt A.Arn
  C:
    Type: Test::Thing
    Properties:
      Name: c
      Parent: !Ref B
  D:
    Type: Test::Thing
    Properties:
      Name: d
"""


def plan(state_store, text: str = CHAIN):
    graph = build_graph(load_template_string(text))
    return Planner(thing_catalog()).create_plan(
        graph,
        state_store.snapshot(),
        stack_name=state_store.stack_name,
        pending=state_store.pending_operations(),
    )


class TestExecution:
    """Tests for successful runs."""

    def test_apply_records_state(self, state_store, provider) -> None:
        """Test that a successful run records every resource."""
        report = make_executor(state_store, provider).execute(plan(state_store))

        assert report.status == ExecutionStatus.SUCCESS
        assert report.succeeded() == ["A", "B", "C", "D"]
        assert provider.count(THING) == 4

        a = state_store.get("A")
        b = state_store.get("B")
        assert b.properties["Parent"] == a.outputs["Arn"]
        assert b.dependencies == ["A"]
        assert state_store.get("C").properties["Parent"] == b.physical_id
        assert state_store.pending_operations() == {}

    def test_progress_callback(self, state_store, provider) -> None:
        """Test that every entry reports start and finish."""
        events = []
        make_executor(state_store, provider).execute(
            plan(state_store),
            progress_callback=lambda entry_id, status, message: events.append((entry_id, status))
        )

        assert ("A", ExecutionStatus.IN_PROGRESS) in events
        assert ("A", ExecutionStatus.SUCCESS) in events
        assert events.index(("A", ExecutionStatus.SUCCESS)) < events.index(("B", ExecutionStatus.IN_PROGRESS))

    def test_noop_entries_make_no_calls(self, state_store, provider) -> None:
        """Test that an unchanged stack touches nothing."""
        executor = make_executor(state_store, provider)
        executor.execute(plan(state_store))
        calls = len(provider.calls)

        report = executor.execute(plan(state_store))
        assert report.status == ExecutionStatus.SUCCESS
        assert len(provider.calls) == calls
        assert report.touched() == []

    def test_independent_entries_run_concurrently(self, state_store, provider) -> None:
        """Test that independent entries are in flight at the same time."""
        barrier = threading.Barrier(2, timeout=5)

        class MeetingProvider(InMemoryProvider):
            def create(self, kind, properties):
                barrier.wait()
                return super().create(kind, properties)

        text = "Resources:\n  A:\n    Type: Test::Thing\n  B:\n    Type: Test::Thing\n"
        report = make_executor(state_store, MeetingProvider(), parallelism=2).execute(plan(state_store, text))
        assert report.status == ExecutionStatus.SUCCESS

    def test_parallelism_bound(self, state_store) -> None:
        """Test that no more entries than the parallelism run at once."""
        lock = threading.Lock()
        in_flight = [0]
        peak = [0]

        class CountingProvider(InMemoryProvider):
            def create(self, kind, properties):
                with lock:
                    in_flight[0] += 1
                    peak[0] = max(peak[0], in_flight[0])
                time.sleep(0.02)
                with lock:
                    in_flight[0] -= 1
                return super().create(kind, properties)

        text = "Resources:\n" + "".join(f"  R{i}:\n    Type: Test::Thing\n" for i in range(6))
        report = make_executor(state_store, CountingProvider(), parallelism=2).execute(plan(state_store, text))

        assert report.status == ExecutionStatus.SUCCESS
        assert 1 <= peak[0] <= 2


class TestFailures:
    """Tests for failed entries."""

    def test_failure_skips_dependents_only(self, state_store, provider) -> None:
        """Test that a permanent failure skips dependents and spares independent entries."""
        provider.inject_fault("create", error=ProviderError("Access denied"), match={"Name": "a"})
        change_set = plan(state_store)
        report = make_executor(state_store, provider).execute(change_set)

        assert report.status == ExecutionStatus.PARTIAL
        assert report.failed() == ["A"]
        assert report.skipped() == ["B", "C"]
        assert report.succeeded() == ["D"]
        assert report.results["B"].message == "Prerequisite A did not succeed"
        assert report.results["C"].message == "Prerequisite B did not succeed"
        assert set(state_store.snapshot()) == {"D"}
        assert report.touched() == ["A", "D"]

        assert change_set.get("A").node.status == ResourceStatus.FAILED
        assert change_set.get("B").node.status == ResourceStatus.PENDING
        assert change_set.get("D").node.status == ResourceStatus.ACTIVE

    def test_failed_status(self, state_store, provider) -> None:
        """Test that an operation ending in FAILED fails the entry and clears its pending record."""
        provider.inject_fault("create", match={"Name": "d"}, status_reason="Quota exceeded")
        report = make_executor(state_store, provider).execute(plan(state_store))

        result = report.results["D"]
        assert result.status == ExecutionStatus.FAILED
        assert "Quota exceeded" in result.message
        assert state_store.pending_operation("D") is None
        assert report.succeeded() == ["A", "B", "C"]

    def test_all_failed(self, state_store, provider) -> None:
        """Test that a run where nothing changed is FAILED, not PARTIAL."""
        provider.inject_fault("create", error=ProviderError("Access denied"), times=-1)
        report = make_executor(state_store, provider).execute(plan(state_store))

        assert report.status == ExecutionStatus.FAILED
        assert report.get_summary() == {"success": 0, "failed": 2, "skipped": 2, "cancelled": 0}

    def test_transient_errors_are_retried(self, state_store, provider) -> None:
        """Test that transient errors are retried until the call succeeds."""
        provider.inject_fault("create", error=ProviderError("Throttled", transient=True), match={"Name": "d"},
                              times=2)
        report = make_executor(state_store, provider).execute(plan(state_store))

        assert report.status == ExecutionStatus.SUCCESS
        assert len([call for call in provider.calls if call[0] == "create"]) == 4

    def test_timeout(self, state_store) -> None:
        """Test that an operation that never settles times out."""
        provider = InMemoryProvider(settle_polls=10 ** 6)
        text = "Resources:\n  A:\n    Type: Test::Thing\n"
        report = make_executor(state_store, provider, polling=fast_polling(timeout=0.05)).execute(
            plan(state_store, text)
        )

        result = report.results["A"]
        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, OperationTimeoutError)
        assert state_store.pending_operation("A") is not None

    def test_lease_conflict(self, state_store, provider) -> None:
        """Test that a resource leased by another run is not touched."""
        leases = LeaseManager()
        leases.acquire("A", "other-run")
        report = make_executor(state_store, provider, leases=leases).execute(plan(state_store))

        assert isinstance(report.results["A"].error, LeaseConflictError)
        assert report.skipped() == ["B", "C"]
        assert report.succeeded() == ["D"]
        assert provider.count() == 1


class TestCancellation:
    """Tests for run cancellation."""

    def test_cancelled_before_start(self, state_store, provider) -> None:
        """Test that a cancelled run starts nothing."""
        cancel_event = threading.Event()
        cancel_event.set()
        report = make_executor(state_store, provider).execute(plan(state_store), cancel_event=cancel_event)

        assert report.status == ExecutionStatus.CANCELLED
        assert report.skipped() == ["A", "B", "C", "D"]
        assert provider.calls == []

    def test_cancel_method(self, state_store, provider) -> None:
        """Test that Executor.cancel() stops the current run from starting more entries."""
        executor = make_executor(state_store, provider)

        def progress(entry_id, status, message):
            if entry_id == "A" and status == ExecutionStatus.IN_PROGRESS:
                executor.cancel()

        report = executor.execute(plan(state_store), progress_callback=progress)

        assert report.status == ExecutionStatus.CANCELLED
        assert report.skipped() == ["B", "C", "D"]

    def test_cancel_before_execute(self, state_store, provider) -> None:
        """Test that a cancel requested between runs stops the next run only."""
        executor = make_executor(state_store, provider)
        executor.cancel()

        report = executor.execute(plan(state_store))
        assert report.status == ExecutionStatus.CANCELLED
        assert report.skipped() == ["A", "B", "C", "D"]
        assert provider.calls == []

        executor.cancel()
        cancel_event = threading.Event()
        report = executor.execute(plan(state_store), cancel_event=cancel_event)
        assert report.status == ExecutionStatus.CANCELLED
        assert cancel_event.is_set()

        report = executor.execute(plan(state_store))
        assert report.status == ExecutionStatus.SUCCESS
        assert provider.count() == 4

    def test_cancel_in_flight(self, state_store, provider) -> None:
        """Test that cancelling stops waiting and skips entries not yet started."""
        release = provider.block("create", match={"Name": "a"})
        started = threading.Event()
        cancel_event = threading.Event()

        def progress(entry_id, status, message):
            if entry_id == "A" and status == ExecutionStatus.IN_PROGRESS:
                started.set()

        text = CHAIN.split("  D:")[0]
        outcome = {}
        worker = threading.Thread(target=lambda: outcome.update(report=make_executor(state_store, provider).execute(
            plan(state_store, text), progress_callback=progress, cancel_event=cancel_event
        )))
        worker.start()
        assert started.wait(5)
        cancel_event.set()
        release.set()
        worker.join(5)

        report = outcome["report"]
        assert report.status == ExecutionStatus.CANCELLED
        assert report.results["A"].status == ExecutionStatus.CANCELLED
        assert report.skipped() == ["B", "C"]
        # The create was accepted, so it stays pending for the next run to resume
        assert state_store.pending_operation("A") is not None


class TestResume:
    """Tests for resuming interrupted runs."""

    def test_resume_pending_create(self, state_store, provider) -> None:
        """Test that an interrupted create is polled, not issued again."""
        started = provider.create(THING, {"Name": "d"})
        state_store.record_pending(PendingOperation(
            entry_id="D", logical_id="D", kind=THING, action="create", handle=started.handle
        ))

        change_set = plan(state_store)
        assert change_set.get("D").reason == "Resume interrupted create"
        report = make_executor(state_store, provider).execute(change_set)

        assert report.status == ExecutionStatus.SUCCESS
        assert state_store.get("D").physical_id == started.physical_id
        assert [call[2] for call in provider.calls].count(started.physical_id) == 1
        assert provider.count() == 4

    def test_abandoned_create_is_deleted(self, state_store, provider) -> None:
        """Test that a create for a resource no longer declared is cleaned up."""
        started = provider.create(THING, {"Name": "z"})
        state_store.record_pending(PendingOperation(
            entry_id="Z", logical_id="Z", kind=THING, action="create", handle=started.handle
        ))

        change_set = plan(state_store)
        assert change_set.get("Z").reason == "Delete resource left by an interrupted create"
        report = make_executor(state_store, provider).execute(change_set)

        assert report.status == ExecutionStatus.SUCCESS
        assert ("delete", THING, started.physical_id) in provider.calls
        assert state_store.pending_operations() == {}
        assert provider.count() == 4

    def test_replace_ordering(self, state_store, provider) -> None:
        """Test that the replacement exists before dependents move and the old one goes."""
        executor = make_executor(state_store, provider)
        text = CHAIN.replace("Name: a", "Name: a\n      Zone: z1")
        executor.execute(plan(state_store, text))
        old_id = state_store.get("A").physical_id

        report = executor.execute(plan(state_store, text.replace("Zone: z1", "Zone: z2")))
        assert report.status == ExecutionStatus.SUCCESS

        new_id = state_store.get("A").physical_id
        assert new_id != old_id
        operations = [(op, physical_id) for op, _, physical_id in provider.calls]
        created = operations.index(("create", new_id))
        b_updated = operations.index(("update", state_store.get("B").physical_id))
        deleted = operations.index(("delete", old_id))
        assert created < b_updated < deleted
        assert state_store.get("B").properties["Parent"] == state_store.get("A").outputs["Arn"]
        assert state_store.pending_operations() == {}

    def test_leftover_retirement_of_removed_resource(self, state_store, provider) -> None:
        """Test that deleting a resource and retiring its old copy do not race for the lease."""
        executor = make_executor(state_store, provider, parallelism=4)
        text = "Resources:\n  X:\n    Type: Test::Thing\n    Properties:\n      Zone: {zone}\n"
        executor.execute(plan(state_store, text.format(zone="z1")))
        old_id = state_store.get("X").physical_id

        provider.inject_fault("delete", error=ProviderError("Access denied"), match={"physical_id": old_id})
        executor.execute(plan(state_store, text.format(zone="z2")))
        new_id = state_store.get("X").physical_id
        assert state_store.pending_operation("X#old") is not None

        release = provider.block("delete", match={"physical_id": new_id})
        timer = threading.Timer(0.2, release.set)
        timer.start()
        try:
            report = executor.execute(plan(state_store, "Resources:\n  Y:\n    Type: Test::Thing\n"))
        finally:
            timer.cancel()
            release.set()

        assert report.status == ExecutionStatus.SUCCESS
        assert report.succeeded() == ["X", "X#old", "Y"]
        assert provider.count() == 1
        assert state_store.pending_operations() == {}
