"""
Unit tests for the per-machine upgrade workflow.
"""

import threading
import unittest
from unittest.mock import patch

from clients import VSphereClient
from config import TimeoutConfig, WorkflowDelays
from fakes import SCRIPTS, FakeGuest, FakeHypervisor, FakeVM
from guest_scripts import SIGNAL_FILE, WORKING_DIRECTORY
from models import GuestCredentials, MachineRef, SnapshotPolicy, StepStatus, UpgradeJob
from polling import CancelToken
from workflow import (
    PHASES,
    FailureClass,
    Phase,
    PhaseResult,
    PhaseStatus,
    UpgradeWorkflow,
    WorkflowContext,
    check_preconditions,
    mount_install_media,
)

ALL_PHASES = [p.name for p in PHASES]

# A few milliseconds, so timeout paths finish quickly
SHORT_MINUTES = 0.0002


def make_job(vm: FakeVM, password="secret", snapshot=True, disk_gb=10, **timeouts):
    return UpgradeJob(
        machine=MachineRef(ref=vm.ref, name=vm.name, domain=vm.domain),
        credentials=GuestCredentials("Administrator", password),
        iso_path="[datastore1] iso/win2022.iso",
        snapshot=SnapshotPolicy(create=snapshot, name_prefix="pre-upgrade"),
        timeouts=TimeoutConfig(**timeouts).resolved(),
        precheck_disk_gb=disk_gb,
        target_os=("windows server 2022", "windows server 2025"),
    )


class WorkflowTestCase(unittest.TestCase):
    def setUp(self):
        self.vm = FakeVM("srv001", "vm-1", domain="srv001.corp.example")
        self.hv = FakeHypervisor([self.vm])
        self.guest = FakeGuest(self.hv)

    def run_workflow(self, job=None, cancel=None, phases=None):
        workflow = UpgradeWorkflow(
            self.hv,
            self.guest,
            SCRIPTS,
            delays=WorkflowDelays.immediate(),
            cancel=cancel,
            phases=phases,
        )
        return workflow.run(job or make_job(self.vm))


class TestHappyPath(WorkflowTestCase):
    def test_full_upgrade_succeeds(self):
        outcome = self.run_workflow()

        self.assertTrue(outcome.success)
        self.assertIsNone(outcome.error)
        self.assertFalse(outcome.manual_check_required)
        self.assertEqual(outcome.phases(), ALL_PHASES)
        self.assertTrue(all(s.status == StepStatus.COMPLETED for s in outcome.steps))
        self.assertEqual(self.vm.os_name, "Microsoft Windows Server 2022 (64-bit)")
        self.assertIsNone(self.vm.iso)

    def test_step_log_is_monotonic(self):
        outcome = self.run_workflow()

        for prev, cur in zip(outcome.steps, outcome.steps[1:]):
            self.assertLessEqual(prev.end_time, cur.start_time)
        for step in outcome.steps:
            self.assertLessEqual(step.start_time, step.end_time)

    def test_snapshot_created_and_verified(self):
        self.run_workflow()

        self.assertEqual(len(self.vm.snapshots), 1)
        self.assertTrue(self.vm.snapshots[0].name.startswith("pre-upgrade-pre-srv001-"))
        self.assertEqual(len(self.hv.calls_to("list_snapshots")), 1)

    def test_disabled_phases_are_not_logged(self):
        outcome = self.run_workflow(make_job(self.vm, snapshot=False, disk_gb=0))

        self.assertTrue(outcome.success)
        self.assertNotIn("create_snapshot", outcome.phases())
        self.assertNotIn("disk_space_precheck", outcome.phases())
        self.assertEqual(self.hv.calls_to("create_snapshot"), [])

    def test_guest_user_qualified_with_domain(self):
        self.run_workflow()

        users = {c[2] for c in self.guest.calls_to("validate_credentials")}
        self.assertEqual(users, {"Administrator@corp.example"})

    def test_upgrade_script_runs_encoded_in_working_directory(self):
        self.run_workflow()

        encoded = [
            c for c in self.guest.calls_to("start_program") if "-EncodedCommand" in c[2]
        ]
        # upgrade script, then cleanup script
        self.assertEqual(len(encoded), 2)
        self.assertEqual(encoded[0][3], WORKING_DIRECTORY)

    def test_uploads_happen_before_upgrade_starts(self):
        self.run_workflow()

        methods = [c[0] for c in self.guest.calls]
        last_upload = max(i for i, m in enumerate(methods) if m == "upload_file")
        first_start = methods.index("start_program")
        self.assertLess(last_upload, first_start)

    def test_forced_power_off_when_guest_does_not_shut_down(self):
        self.vm.guest_shuts_down = False

        outcome = self.run_workflow(make_job(self.vm, poweroff_minutes=SHORT_MINUTES))

        self.assertTrue(outcome.success)
        self.assertEqual(len(self.hv.calls_to("power_off")), 1)
        step = outcome.steps[ALL_PHASES.index("power_cycle")]
        self.assertIn("forced power off", step.message)


class TestFatalFailures(WorkflowTestCase):
    def assert_failed_at(self, outcome, phase):
        k = ALL_PHASES.index(phase)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.phases(), ALL_PHASES[: k + 1])
        self.assertEqual(outcome.steps[-1].status, StepStatus.FAILED)
        self.assertEqual(outcome.error.phase, phase)
        self.assertFalse(outcome.error.cancelled)

    def test_not_powered_on(self):
        self.vm.power_state = "poweredOff"

        outcome = self.run_workflow()

        self.assert_failed_at(outcome, "precondition_check")
        self.assertIn("poweredOff", outcome.error.message)

    def test_insufficient_disk_space(self):
        self.vm.disks[0]["freeSpace"] = 5 * 1024**3

        outcome = self.run_workflow(make_job(self.vm, disk_gb=10))

        self.assert_failed_at(outcome, "disk_space_precheck")
        self.assertIn("5 GB", outcome.error.message)

    def test_snapshot_verification_failure(self):
        self.hv.drop_created_snapshots = True

        outcome = self.run_workflow()

        self.assert_failed_at(outcome, "create_snapshot")
        self.assertIn("verification failed", outcome.error.message)

    def test_mount_failure(self):
        self.hv.fail["mount_iso"] = RuntimeError("no CD-ROM device")

        outcome = self.run_workflow()

        self.assert_failed_at(outcome, "mount_install_media")
        self.assertIn("no CD-ROM device", outcome.error.message)

    def test_upload_failure(self):
        self.guest.fail["upload_file"] = RuntimeError("guest operations unavailable")

        outcome = self.run_workflow()

        self.assert_failed_at(outcome, "upload_guest_scripts")

    def test_authentication_failure_starts_nothing(self):
        outcome = self.run_workflow(make_job(self.vm, password="wrong"))

        self.assert_failed_at(outcome, "start_guest_upgrade")
        self.assertIn("authentication failed", outcome.error.message)
        started = [c for c in self.guest.calls_to("start_program") if "-EncodedCommand" in c[2]]
        self.assertEqual(started, [])

    def test_non_zero_script_exit(self):
        self.vm.upgrade_exit_code = 3

        outcome = self.run_workflow()

        self.assert_failed_at(outcome, "wait_guest_script")
        self.assertIn("exit code 3", outcome.error.message)
        self.assertEqual(self.hv.calls_to("power_on"), [])

    def test_target_os_timeout_is_fatal(self):
        self.vm.keep_old_os = True

        outcome = self.run_workflow(make_job(self.vm, target_os_minutes=SHORT_MINUTES))

        self.assert_failed_at(outcome, "wait_target_os")
        self.assertIn("timeout", outcome.error.message)

    def test_too_many_transient_errors_is_fatal(self):
        calls = {"n": 0}
        original = self.hv.get_properties

        def flaky(vm, selectors):
            if "guest.guestFullName" in selectors:
                calls["n"] += 1
                raise ConnectionError("connection reset")
            return original(vm, selectors)

        self.hv.get_properties = flaky

        outcome = self.run_workflow()

        self.assert_failed_at(outcome, "wait_target_os")
        self.assertEqual(calls["n"], 6)


class TestSoftFailures(WorkflowTestCase):
    def test_signal_setup_and_unmount_failures_are_warnings(self):
        self.vm.signal_exit_code = 1
        self.hv.fail["unmount_iso"] = RuntimeError("device busy")

        outcome = self.run_workflow()

        self.assertTrue(outcome.success)
        self.assertEqual(
            [w.phase for w in outcome.warnings],
            ["setup_reboot_signal", "unmount_install_media"],
        )
        self.assertFalse(outcome.manual_check_required)
        self.assertEqual(outcome.phases(), ALL_PHASES)

    def test_signal_script_still_running_continues(self):
        self.vm.signal_script_hangs = True

        outcome = self.run_workflow(make_job(self.vm, signal_script_seconds=0.01))

        self.assertTrue(outcome.success)
        step = outcome.steps[ALL_PHASES.index("setup_reboot_signal")]
        self.assertEqual(step.status, StepStatus.COMPLETED)
        self.assertIn("still running", step.message)

    def test_signal_file_timeout_requires_manual_check(self):
        self.vm.write_signal_file = False

        outcome = self.run_workflow(make_job(self.vm, signal_files_minutes=SHORT_MINUTES))

        self.assertTrue(outcome.success)
        self.assertTrue(outcome.manual_check_required)
        step = outcome.steps[ALL_PHASES.index("wait_reboot_signal")]
        self.assertEqual(step.status, StepStatus.WARNING)
        self.assertIn(SIGNAL_FILE, step.message)
        # unmount still runs
        self.assertEqual(outcome.phases()[-1], "unmount_install_media")

    def test_cleanup_failure_does_not_fail_phase(self):
        original = self.guest.start_program

        def start(vm, creds, program, arguments="", working_directory=""):
            if self.vm.booted_upgraded:
                raise RuntimeError("cleanup failed")
            return original(vm, creds, program, arguments, working_directory)

        self.guest.start_program = start

        outcome = self.run_workflow()

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.warnings, [])


class TestCancellation(WorkflowTestCase):
    def test_cancelled_before_start(self):
        root = CancelToken()
        root.cancel("operator abort")

        outcome = self.run_workflow(cancel=root)

        self.assertFalse(outcome.success)
        self.assertTrue(outcome.error.cancelled)
        self.assertEqual(outcome.steps[-1].status, StepStatus.CANCELLED)
        self.assertEqual(outcome.phases(), ["precondition_check"])
        self.assertIn("operator abort", outcome.error.message)

    def test_cancel_during_wait_is_fatal_even_in_soft_phase(self):
        root = CancelToken()
        self.vm.write_signal_file = False
        original = self.guest.file_exists

        def file_exists(vm, creds, path):
            root.cancel("operator abort")
            return original(vm, creds, path)

        self.guest.file_exists = file_exists

        outcome = self.run_workflow(cancel=root)

        self.assertFalse(outcome.success)
        self.assertTrue(outcome.error.cancelled)
        self.assertEqual(outcome.error.phase, "wait_reboot_signal")
        self.assertEqual(outcome.steps[-1].status, StepStatus.CANCELLED)

    def test_overall_timeout_cancels(self):
        self.vm.keep_old_os = True

        outcome = self.run_workflow(make_job(self.vm, overall_minutes=SHORT_MINUTES))

        self.assertFalse(outcome.success)
        self.assertTrue(outcome.error.cancelled)
        self.assertIn("overall timeout", outcome.error.message)

    def test_overall_timeout_interrupts_stuck_task(self):
        def call(method, path, body=None):
            if path.endswith("/config"):
                return {"hardware": {"device": [{"_typeName": "VirtualCdrom", "key": 3000}]}}
            if path.endswith("ReconfigVM_Task"):
                return {"_typeName": "ManagedObjectReference", "type": "Task", "value": "task-1"}
            return {"state": "running"}

        client = VSphereClient("vc01", "admin", "pw")
        workflow = UpgradeWorkflow(
            client,
            client,
            SCRIPTS,
            delays=WorkflowDelays.immediate(),
            phases=[Phase("mount_install_media", mount_install_media, FailureClass.FATAL)],
        )
        job = make_job(self.vm, overall_minutes=0.005)
        outcomes = []

        with patch.object(VSphereClient, "_call", side_effect=call):
            worker = threading.Thread(target=lambda: outcomes.append(workflow.run(job)))
            worker.start()
            worker.join(timeout=5)

        self.assertFalse(worker.is_alive())
        outcome = outcomes[0]
        self.assertFalse(outcome.success)
        self.assertTrue(outcome.error.cancelled)
        self.assertEqual(outcome.error.phase, "mount_install_media")
        self.assertIn("overall timeout", outcome.error.message)


class TestPhasePolicy(WorkflowTestCase):
    def test_exception_in_soft_phase_is_downgraded(self):
        def boom(ctx):
            raise RuntimeError("boom")

        phases = [
            Phase("first", boom, FailureClass.SOFT),
            Phase("second", lambda ctx: PhaseResult.success("ok"), FailureClass.FATAL),
        ]

        outcome = self.run_workflow(phases=phases)

        self.assertTrue(outcome.success)
        self.assertEqual([s.status for s in outcome.steps], [StepStatus.WARNING, StepStatus.COMPLETED])

    def test_none_result_means_success(self):
        phases = [Phase("noop", lambda ctx: None, FailureClass.FATAL)]

        outcome = self.run_workflow(phases=phases)

        self.assertTrue(outcome.success)

    def test_fatal_phase_short_circuits(self):
        ran = []
        phases = [
            Phase("a", lambda ctx: PhaseResult.fatal("nope"), FailureClass.FATAL),
            Phase("b", lambda ctx: ran.append("b"), FailureClass.FATAL),
        ]

        outcome = self.run_workflow(phases=phases)

        self.assertFalse(outcome.success)
        self.assertEqual(ran, [])
        self.assertEqual(str(outcome.error), "a: nope")

    def test_phase_table_matches_failure_classes(self):
        soft = {p.name for p in PHASES if p.on_failure == FailureClass.SOFT}
        self.assertEqual(
            soft, {"setup_reboot_signal", "wait_reboot_signal", "unmount_install_media"}
        )

    def test_precondition_check_is_idempotent(self):
        ctx = WorkflowContext(
            job=make_job(self.vm),
            hypervisor=self.hv,
            guest=self.guest,
            scripts=SCRIPTS,
            cancel=CancelToken(),
            delays=WorkflowDelays.immediate(),
        )
        results = [check_preconditions(ctx) for _ in range(3)]
        self.assertTrue(all(r.status == PhaseStatus.SUCCESS for r in results))


if __name__ == "__main__":
    unittest.main()
