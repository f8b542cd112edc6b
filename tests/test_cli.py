"""Tests for cli module."""

import json
from unittest import mock

import pytest
from typer.testing import CliRunner

from hyperv_provisioner.cli import app
from hyperv_provisioner.config import ReconcileOptions
from hyperv_provisioner.engine import VMResult
from hyperv_provisioner.policy import AllowAll, DenyAll, InteractiveConfirmation

runner = CliRunner()


@pytest.fixture
def store(write_store):
    return write_store(
        {
            "vm1": {"hostName": "hv01", "memoryStartupBytes": "2GB", "disks": [{"path": "C:\\vm1.vhdx", "size": "100GB"}]},
            "vm2": {"deploymentMethod": "ISO", "filePath": "os.iso"},
        }
    )


@pytest.fixture
def engine():
    """Patch the execution context and return the engine the CLI builds."""
    with mock.patch("hyperv_provisioner.cli.ExecutionContext"), mock.patch(
        "hyperv_provisioner.cli.ReconciliationEngine"
    ) as mock_engine:
        built = mock_engine.build.return_value
        built.provision.return_value = [VMResult(name="vm1", success=True, host="hv01")]
        built.decommission.return_value = [VMResult(name="vm1", success=True, host="hv01")]
        built.build = mock_engine.build
        yield built


class TestProvisionCommand:
    """Tests for the provision command."""

    def test_provision(self, store, engine):
        result = runner.invoke(app, ["provision", str(store), "vm1", "--skip-start", "--yes"])

        assert result.exit_code == 0, result.output
        engine.provision.assert_called_once_with(["vm1"])
        kwargs = engine.build.call_args.kwargs
        assert kwargs["options"] == ReconcileOptions(skip_start=True)
        assert isinstance(kwargs["confirm"], AllowAll)

    def test_names_from_stdin(self, store, engine):
        result = runner.invoke(app, ["provision", str(store)], input="vm1\n\nvm2\n")

        assert result.exit_code == 0, result.output
        engine.provision.assert_called_once_with(["vm1", "vm2"])

    def test_no_names(self, store, engine):
        result = runner.invoke(app, ["provision", str(store)])

        assert result.exit_code == 1
        assert "No VM names" in result.output
        engine.provision.assert_not_called()

    def test_default_confirmation_denies(self, store, engine):
        runner.invoke(app, ["provision", str(store), "vm1"])
        assert isinstance(engine.build.call_args.kwargs["confirm"], DenyAll)

    def test_interactive_confirmation(self, store, engine):
        runner.invoke(app, ["provision", str(store), "vm1", "-i"])
        assert isinstance(engine.build.call_args.kwargs["confirm"], InteractiveConfirmation)

    def test_failed_vm_exit_code(self, store, engine):
        """Test any failed VM makes the run exit nonzero."""
        engine.provision.return_value = [
            VMResult(name="vm1", success=True, host="hv01"),
            VMResult(name="vm2", success=False, step="storage", message="No free SCSI slot"),
        ]

        result = runner.invoke(app, ["provision", str(store), "vm1", "vm2"])

        assert result.exit_code == 1
        assert "Failed: 1" in result.output

    def test_missing_store(self, tmp_path, engine):
        result = runner.invoke(app, ["provision", str(tmp_path / "missing.json"), "vm1"])

        assert result.exit_code == 1
        assert "not found" in result.output
        engine.provision.assert_not_called()


class TestDecommissionCommand:
    """Tests for the decommission command."""

    def test_decommission_options(self, store, engine):
        result = runner.invoke(
            app,
            ["decommission", str(store), "vm1", "--remove-network-objects", "--dns-zone", "corp.example.com", "-f"],
        )

        assert result.exit_code == 0, result.output
        engine.decommission.assert_called_once_with(["vm1"])
        kwargs = engine.build.call_args.kwargs
        assert kwargs["options"] == ReconcileOptions(remove_network_objects=True, force=True, dns_zone="corp.example.com")
        assert isinstance(kwargs["confirm"], AllowAll)


class TestShowCommand:
    """Tests for the show command."""

    def test_show_valid_store(self, store):
        result = runner.invoke(app, ["show", str(store)])

        assert result.exit_code == 0, result.output
        assert "vm1" in result.output
        assert "ISO" in result.output

    def test_show_invalid_entry(self, tmp_path):
        path = tmp_path / "vms.json"
        path.write_text(json.dumps({"vm1": {"generation": 5}}), encoding="utf-8")

        result = runner.invoke(app, ["show", str(path)])

        assert result.exit_code == 1
        assert "generation" in result.output

    def test_show_unknown_name(self, store):
        result = runner.invoke(app, ["show", str(store), "ghost"])
        assert result.exit_code == 1
