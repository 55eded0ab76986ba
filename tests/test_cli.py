"""Tests for the command-line interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from stackweave.cli import main
from stackweave.providers.memory import InMemoryProvider
from stackweave.state.manager import StateStore
from stackweave.utils.errors import ProviderError

CONFIG = """
state_dir: state
local_cloud_file: cloud.json
log_dir: null
polling:
  initial_interval: 0.001
  max_interval: 0.01
stacks:
  app:
    template: app.yaml
"""

TEMPLATE = """
Parameters:
  Size:
    Type: String
    Default: "1"
Resources:
  A:
    Type: Test::Thing
    Properties:
      Name: a
      Size: !Ref Size
  B:
    Type: Test::Thing
    Properties:
      Name: b
      Parent: !GetAtt A.Arn
Outputs:
  AArn:
    Value: !GetAtt A.Arn
"""

CYCLE = """
Resources:
  A:
    Type: Test::Thing
    Properties:
      Peer: !Ref B
  B:
    Type: Test::Thing
    Properties:
      Peer: !Ref A
"""


@pytest.fixture
def runner(tmp_path, monkeypatch):
    """CliRunner inside a project directory with a config and a template."""
    monkeypatch.setattr(main, "setup_logging", lambda *args, **kwargs: None)
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("stackweave.yaml").write_text(CONFIG)
        Path("app.yaml").write_text(TEMPLATE)
        yield runner


def invoke(runner, *args, **kwargs):
    return runner.invoke(main.cli, list(args), obj={}, **kwargs)


def applied(runner):
    result = invoke(runner, "apply", "--stack", "app", "--auto-approve")
    assert result.exit_code == 0, result.output
    return result


class TestPlanAndApply:
    """Tests for plan and apply."""

    def test_plan(self, runner) -> None:
        """Test that plan lists the changes and exits 0."""
        result = invoke(runner, "plan", "--stack", "app")

        assert result.exit_code == 0, result.output
        assert "2 to create" in result.output
        assert not Path("state/app.json").exists()

    def test_plan_cycle(self, runner) -> None:
        """Test that an invalid template exits 2 with the error."""
        Path("cycle.yaml").write_text(CYCLE)

        result = invoke(runner, "plan", "--stack", "app", "--template", "cycle.yaml")

        assert result.exit_code == 2
        assert "Circular dependency detected" in result.output

    def test_bad_parameter(self, runner) -> None:
        """Test that a parameter without a value is a usage error."""
        result = invoke(runner, "plan", "--stack", "app", "-p", "Size")

        assert result.exit_code == 2
        assert "Name=Value" in result.output

    def test_apply(self, runner) -> None:
        """Test that apply creates the resources and records outputs."""
        result = applied(runner)
        assert "Run success" in result.output

        store = StateStore("state", "app")
        store.load()
        assert sorted(store.snapshot()) == ["A", "B"]
        assert InMemoryProvider(state_file="cloud.json").count() == 2

        outputs = invoke(runner, "outputs", "--stack", "app", "--name", "AArn")
        assert outputs.exit_code == 0
        assert outputs.output.strip() == store.get("A").outputs["Arn"]

    def test_apply_with_parameter(self, runner) -> None:
        """Test that command-line parameters reach the resources."""
        result = invoke(runner, "apply", "--stack", "app", "--auto-approve", "-p", "Size=3")
        assert result.exit_code == 0, result.output

        store = StateStore("state", "app")
        store.load()
        assert store.get("A").properties["Size"] == "3"

    def test_apply_declined(self, runner) -> None:
        """Test that declining the prompt changes nothing."""
        result = invoke(runner, "apply", "--stack", "app", input="n\n")

        assert result.exit_code == 0
        assert "Apply cancelled" in result.output
        assert not Path("state/app.json").exists()

    def test_partial_apply_exits_1(self, runner, monkeypatch) -> None:
        """Test that a run with failed entries exits 1."""
        create_orchestrator = main.create_orchestrator

        def failing(config, stack):
            orchestrator = create_orchestrator(config, stack)
            orchestrator.providers.for_kind("Test::Thing").inject_fault(
                "create", error=ProviderError("Access denied"), match={"Name": "b"}
            )
            return orchestrator

        monkeypatch.setattr(main, "create_orchestrator", failing)
        result = invoke(runner, "apply", "--stack", "app", "--auto-approve")

        assert result.exit_code == 1
        assert "Access denied" in result.output

    def test_failed_apply_exits_2(self, runner, monkeypatch) -> None:
        """Test that a run where no change succeeded exits 2."""
        create_orchestrator = main.create_orchestrator

        def failing(config, stack):
            orchestrator = create_orchestrator(config, stack)
            orchestrator.providers.for_kind("Test::Thing").inject_fault(
                "create", error=ProviderError("Access denied"), times=-1
            )
            return orchestrator

        monkeypatch.setattr(main, "create_orchestrator", failing)
        result = invoke(runner, "apply", "--stack", "app", "--auto-approve")

        assert result.exit_code == 2
        assert "Access denied" in result.output

    def test_invalid_config(self, runner) -> None:
        """Test that an invalid config file exits 2 before doing anything."""
        Path("stackweave.yaml").write_text("parallelism: 0\n")

        result = invoke(runner, "plan", "--stack", "app")

        assert result.exit_code == 2
        assert "Configuration validation failed" in result.output


class TestInspection:
    """Tests for outputs and state commands."""

    def test_outputs_json(self, runner) -> None:
        applied(runner)

        result = invoke(runner, "outputs", "--stack", "app", "--format", "json")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["AArn"].startswith("arn:aws:thing:us-east-1:")

    def test_missing_output(self, runner) -> None:
        applied(runner)

        result = invoke(runner, "outputs", "--stack", "app", "--name", "Nope")
        assert result.exit_code == 2

    def test_state_list_and_show(self, runner) -> None:
        """Test listing records and showing one of them."""
        applied(runner)

        listing = invoke(runner, "state", "list", "--stack", "app")
        assert listing.exit_code == 0
        assert "Test::Thing" in listing.output

        shown = invoke(runner, "state", "show", "A", "--stack", "app")
        assert shown.exit_code == 0
        assert json.loads(shown.stdout)["properties"]["Name"] == "a"

        missing = invoke(runner, "state", "show", "Nope", "--stack", "app")
        assert missing.exit_code == 2


class TestDriftAndDestroy:
    """Tests for drift and destroy."""

    def test_drift(self, runner) -> None:
        """Test drift exit codes with and without --fail-on-drift."""
        applied(runner)
        assert invoke(runner, "drift", "--stack", "app", "--fail-on-drift").exit_code == 0

        store = StateStore("state", "app")
        store.load()
        InMemoryProvider(state_file="cloud.json").modify(store.get("A").physical_id, {"Size": "9"})

        assert invoke(runner, "drift", "--stack", "app").exit_code == 0
        result = invoke(runner, "drift", "--stack", "app", "--fail-on-drift")
        assert result.exit_code == 3
        assert "modified" in result.output

    def test_drift_json(self, runner) -> None:
        applied(runner)

        result = invoke(runner, "drift", "--stack", "app", "--format", "json")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["total_resources_checked"] == 2

    def test_destroy(self, runner) -> None:
        """Test that destroy removes every resource."""
        applied(runner)

        result = invoke(runner, "destroy", "--stack", "app", "--yes")

        assert result.exit_code == 0, result.output
        assert InMemoryProvider(state_file="cloud.json").count() == 0
        assert "No resources recorded" in invoke(runner, "state", "list", "--stack", "app").output

    def test_destroy_empty_stack(self, runner) -> None:
        result = invoke(runner, "destroy", "--stack", "app", "--yes")

        assert result.exit_code == 0
        assert "No resources recorded" in result.output
