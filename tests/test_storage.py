"""Tests for storage module."""

import pytest

from hyperv_provisioner.exceptions import PreconditionFailedError
from hyperv_provisioner.models import DesiredVM, LiveVM
from hyperv_provisioner.policy import AllowAll
from hyperv_provisioner.storage import StorageReconciler

GB = 1024**3
DATA = "C:\\VMs\\vm1\\data.vhdx"
OS = "C:\\VMs\\vm1\\os.vhdx"


def _desired(*disks) -> DesiredVM:
    return DesiredVM.from_dict("vm1", {"disks": list(disks)}, "C:\\VMs")


def _live(hv, vm) -> LiveVM:
    return LiveVM.from_record(hv.get_vm(vm["host"], vm["id"]), vm["host"])


def _attach(vm, path, number, location, controller_type="SCSI"):
    vm["hard_disks"].append(
        {"path": path, "controller_type": controller_type, "controller_number": number, "controller_location": location}
    )


@pytest.fixture
def vm(hv):
    return hv.add_vm("vm1", "hv01")


@pytest.fixture
def storage(hv):
    return StorageReconciler(hv)


class TestPlan:
    """Tests for slot resolution."""

    def test_default_disk_gets_first_free_slot(self, hv, vm, storage):
        placements = storage.plan(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))
        assert [p.slot for p in placements] == [(0, 0)]
        assert placements[0].explicit is False

    def test_default_disk_keeps_current_attachment(self, hv, vm, storage):
        _attach(vm, OS, 0, 5)
        placements = storage.plan(_live(hv, vm), _desired({"path": OS.upper(), "size": "100GB"}))
        assert placements[0].slot == (0, 5)

    def test_explicit_slot_is_claimed_first(self, hv, vm, storage):
        """Test a default disk never lands on a slot another desired disk names."""
        placements = storage.plan(
            _live(hv, vm),
            _desired(
                {"path": DATA, "size": "10GB"},
                {"path": OS, "size": "100GB", "controllerNumber": 0, "controllerLocation": 0},
            ),
        )
        assert [p.slot for p in placements] == [(0, 1), (0, 0)]

    def test_default_disk_skips_dvd_slot(self, hv, vm, storage):
        vm["dvd_drives"].append({"controller_number": 0, "controller_location": 0, "path": None})
        placements = storage.plan(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))
        assert placements[0].slot == (0, 1)

    def test_duplicate_paths_attached_once(self, hv, vm, storage, caplog):
        placements = storage.plan(
            _live(hv, vm), _desired({"path": OS, "size": "100GB"}, {"path": OS.lower(), "size": "100GB"})
        )
        assert len(placements) == 1
        assert "more than once" in caplog.text


class TestEnsureDisks:
    """Tests for disk creation and attachment."""

    def test_creates_and_attaches(self, hv, vm, storage):
        storage.ensure_disks(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))

        assert hv.called("new_vhd") == [(OS, 100 * GB)]
        assert hv.called("add_hard_disk") == [(vm["id"], OS, 0, 0)]

    def test_second_pass_changes_nothing(self, hv, vm, storage):
        desired = _desired({"path": OS, "size": "100GB"}, {"path": DATA, "size": "10GB", "controllerLocation": 3})
        storage.ensure_disks(_live(hv, vm), desired)
        hv.reset()

        storage.ensure_disks(_live(hv, vm), desired)

        assert hv.calls == []

    def test_reuses_existing_file_of_same_size(self, hv, vm, storage):
        hv.add_vhd(OS, 100 * GB)
        storage.ensure_disks(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))
        assert hv.called("new_vhd") == []
        assert hv.called("add_hard_disk") == [(vm["id"], OS, 0, 0)]

    def test_size_mismatch_denied(self, hv, vm, storage):
        """Test a differently-sized image is not used without consent."""
        hv.add_vhd(OS, 50 * GB)

        with pytest.raises(PreconditionFailedError, match="exists with size"):
            storage.ensure_disks(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))

        assert hv.calls == []

    def test_size_mismatch_confirmed(self, hv, vm):
        hv.add_vhd(OS, 50 * GB)
        StorageReconciler(hv, AllowAll()).ensure_disks(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))
        assert hv.called("new_vhd") == []
        assert hv.called("add_hard_disk") == [(vm["id"], OS, 0, 0)]

    def test_explicit_slot_replaces_occupant(self, hv, vm, storage, caplog):
        """Test the occupant is detached and left in place on disk."""
        _attach(vm, DATA, 0, 0)

        storage.ensure_disks(
            _live(hv, vm), _desired({"path": OS, "size": "100GB", "controllerNumber": 0, "controllerLocation": 0})
        )

        assert hv.called("remove_hard_disk") == [(vm["id"], "SCSI", 0, 0)]
        assert hv.called("add_hard_disk") == [(vm["id"], OS, 0, 0)]
        assert "left detached" in caplog.text

    def test_explicit_slot_preserves_occupant(self, hv, vm, storage):
        """Test preserve re-attaches the displaced disk at the first free slot."""
        _attach(vm, DATA, 0, 0)

        storage.ensure_disks(
            _live(hv, vm),
            _desired({"path": OS, "size": "100GB", "controllerNumber": 0, "controllerLocation": 0}),
            preserve=True,
        )

        assert hv.called("add_hard_disk") == [(vm["id"], OS, 0, 0), (vm["id"], DATA, 0, 1)]

    def test_moves_disk_to_new_controller(self, hv, vm, storage):
        """Test a disk on the wrong slot is moved and controllers are added on demand."""
        _attach(vm, OS, 0, 3)

        storage.ensure_disks(
            _live(hv, vm), _desired({"path": OS, "size": "100GB", "controllerNumber": 1, "controllerLocation": 0})
        )

        assert [name for name, _ in hv.calls] == ["remove_hard_disk", "add_scsi_controller", "add_hard_disk"]
        assert hv.called("add_hard_disk") == [(vm["id"], OS, 1, 0)]
        assert hv.called("new_vhd") == []

    def test_generation_1_gets_scsi_controller(self, hv, storage):
        vm = hv.add_vm("vm1", "hv01", generation=1)
        storage.ensure_disks(_live(hv, vm), _desired({"path": OS, "size": "100GB"}))
        assert hv.called("add_scsi_controller") == [(vm["id"],)]
        assert hv.called("add_hard_disk") == [(vm["id"], OS, 0, 0)]

    def test_dvd_drive_in_slot(self, hv, vm, storage):
        vm["dvd_drives"].append({"controller_number": 0, "controller_location": 0, "path": None})

        with pytest.raises(PreconditionFailedError, match="DVD"):
            storage.ensure_disks(
                _live(hv, vm),
                _desired({"path": OS, "size": "100GB", "controllerNumber": 0, "controllerLocation": 0}),
            )

        assert hv.called("add_hard_disk") == []

    def test_duplicate_attachment_detached(self, hv, vm, storage):
        """Test extra attachments of the same file are removed."""
        _attach(vm, OS, 0, 0)
        _attach(vm, OS, 0, 1)

        storage.ensure_disks(
            _live(hv, vm), _desired({"path": OS, "size": "100GB", "controllerNumber": 0, "controllerLocation": 0})
        )

        assert hv.called("remove_hard_disk") == [(vm["id"], "SCSI", 0, 1)]
        assert hv.called("add_hard_disk") == []
