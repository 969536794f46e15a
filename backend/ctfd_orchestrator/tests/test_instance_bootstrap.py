import json
import os
import tempfile
from unittest import TestCase, mock

from botocore.exceptions import NoRegionError

from ctfd_orchestrator.config import DeploymentConfig
from ctfd_orchestrator.errors import FatalProvisioningError, InvalidTransition, SecretStoreError
from ctfd_orchestrator.instances import bootstrap
from ctfd_orchestrator.instances.bootstrap import (
    BootstrapOrchestrator,
    BootstrapState,
    BootstrapStep,
    HealthStatus,
    await_health,
)
from ctfd_orchestrator.instances.metadata import InstanceMetadata


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self):
        return self.now


class RecordingRunner:
    def __init__(self, fail_on=None):
        self.commands = []
        self.fail_on = fail_on

    def __call__(self, args, step):
        self.commands.append(list(args))
        if self.fail_on and self.fail_on(args):
            raise FatalProvisioningError(step, f"command exited 1: {' '.join(args)}")
        return ""


def _which_apt(name):
    return "/usr/bin/apt-get" if name == "apt-get" else None


class BootstrapStateTests(TestCase):
    def test_steps_must_follow_the_chain(self):
        state = BootstrapState()
        with self.assertRaises(InvalidTransition):
            state.mark(BootstrapStep.MANIFEST_RENDERED)
        state.mark(BootstrapStep.RUNTIME_READY)
        state.mark(BootstrapStep.MANIFEST_RENDERED)
        with self.assertRaises(InvalidTransition):
            state.mark(BootstrapStep.HEALTH_CONFIRMED)
        self.assertEqual(state.last_step, BootstrapStep.MANIFEST_RENDERED)

    def test_step_cannot_be_marked_twice(self):
        state = BootstrapState()
        state.mark(BootstrapStep.RUNTIME_READY)
        with self.assertRaises(InvalidTransition):
            state.mark(BootstrapStep.RUNTIME_READY)

    def test_credential_issued_requires_token_and_is_not_serialized(self):
        state = BootstrapState(
            runtime_ready=True, manifest_rendered=True, services_started=True, health_confirmed=True
        )
        with self.assertRaises(InvalidTransition):
            state.mark(BootstrapStep.CREDENTIAL_ISSUED)
        state.mark(BootstrapStep.CREDENTIAL_ISSUED, "ctfd_secret_token")
        payload = state.to_dict()
        self.assertIs(payload["credential_issued"], True)
        self.assertNotIn("ctfd_secret_token", json.dumps(payload))
        self.assertNotIn("ctfd_secret_token", repr(state))


class AwaitHealthTests(TestCase):
    def test_ready_on_twelfth_attempt_after_110_seconds(self):
        clock = FakeClock()
        check = mock.Mock(side_effect=[False] * 11 + [True])
        result = await_health(check, max_attempts=30, interval=10, sleep=clock.sleep, clock=clock)
        self.assertEqual(result.status, HealthStatus.READY)
        self.assertEqual(result.attempts, 12)
        self.assertEqual(result.elapsed, 110)
        self.assertEqual(check.call_count, 12)

    def test_unavailable_never_exceeds_attempt_budget(self):
        clock = FakeClock()
        check = mock.Mock(return_value=False)
        result = await_health(check, max_attempts=30, interval=10, sleep=clock.sleep, clock=clock)
        self.assertEqual(result.status, HealthStatus.UNAVAILABLE)
        self.assertEqual(check.call_count, 30)
        self.assertLessEqual(result.elapsed, 30 * 10)
        self.assertEqual(len(clock.sleeps), 29)
        self.assertTrue(all(value == 10 for value in clock.sleeps))

    def test_slow_health_check_stays_within_attempt_budget(self):
        clock = FakeClock()

        def timed_out_check():
            clock.now += 5
            return False

        result = await_health(timed_out_check, max_attempts=30, interval=10, sleep=clock.sleep, clock=clock)
        self.assertEqual(result.status, HealthStatus.UNAVAILABLE)
        self.assertEqual(result.attempts, 30)
        self.assertLessEqual(result.elapsed, 30 * 10)
        self.assertEqual(clock.now, 295)

    def test_slow_health_check_keeps_fixed_schedule_until_ready(self):
        clock = FakeClock()
        outcomes = iter([False] * 11 + [True])

        def check():
            clock.now += 2
            return next(outcomes)

        result = await_health(check, max_attempts=30, interval=10, sleep=clock.sleep, clock=clock)
        self.assertTrue(result.ready)
        self.assertEqual(result.attempts, 12)
        self.assertEqual(result.elapsed, 112)


class InstallRuntimeTests(TestCase):
    def test_apt_install_skips_plugin_download_when_compose_present(self):
        runner = RecordingRunner()
        bootstrap.install_runtime(runner, _which_apt)
        self.assertEqual(runner.commands[0], ["apt-get", "update"])
        self.assertIn(["apt-get", "install", "-y", "docker.io", "curl"], runner.commands)
        self.assertIn(["systemctl", "enable", "--now", "docker"], runner.commands)
        self.assertFalse(any(cmd[0] == "curl" for cmd in runner.commands))

    def test_downloads_compose_plugin_when_missing(self):
        calls = {"compose": 0}

        def fail_on(args):
            if args[:3] == ["docker", "compose", "version"]:
                calls["compose"] += 1
                return calls["compose"] == 1
            return False

        runner = RecordingRunner(fail_on=fail_on)
        with mock.patch("ctfd_orchestrator.instances.bootstrap.platform.machine", return_value="aarch64"):
            bootstrap.install_runtime(runner, lambda name: "/usr/bin/dnf" if name == "dnf" else None)
        self.assertEqual(runner.commands[0], ["dnf", "install", "-y", "docker"])
        curl = [cmd for cmd in runner.commands if cmd[0] == "curl"][0]
        self.assertTrue(curl[2].endswith("docker-compose-linux-aarch64"))

    def test_no_package_manager_is_fatal(self):
        with self.assertRaises(FatalProvisioningError) as ctx:
            bootstrap.install_runtime(RecordingRunner(), lambda name: None)
        self.assertEqual(ctx.exception.step, "install_runtime")

    def test_run_command_translates_process_failure(self):
        error = bootstrap.subprocess.CalledProcessError(100, ["apt-get", "update"], stderr="E: broken")
        with mock.patch("ctfd_orchestrator.instances.bootstrap.subprocess.run", side_effect=error):
            with self.assertRaises(FatalProvisioningError) as ctx:
                bootstrap.run_command(["apt-get", "update"], "install_runtime")
        self.assertIn("E: broken", str(ctx.exception))


class SecretKeyTests(TestCase):
    def test_generated_key_is_reused(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = DeploymentConfig(state_dir=tmpdir)
            first = bootstrap.ensure_secret_key(config)
            second = bootstrap.ensure_secret_key(config)
        self.assertEqual(first, second)
        self.assertEqual(len(first), 64)

    def test_configured_key_wins(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = DeploymentConfig(state_dir=tmpdir, secret_key="configured")
            self.assertEqual(bootstrap.ensure_secret_key(config), "configured")
            self.assertFalse(os.path.exists(config.secret_key_file))


class BootstrapOrchestratorTests(TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        root = self.tmpdir.name
        self.config = DeploymentConfig(
            secret_key="s" * 64,
            compose_path=os.path.join(root, "compose", "docker-compose.yml"),
            data_root=os.path.join(root, "data"),
            state_dir=os.path.join(root, "state"),
            secret_name="ctfd/admin-token",
        )
        self.clock = FakeClock()
        self.runner = RecordingRunner()
        self.client = mock.Mock()
        self.secret_store = mock.Mock()

    def tearDown(self):
        self.tmpdir.cleanup()

    def _orchestrator(self, runner=None):
        return BootstrapOrchestrator(
            self.config,
            runner=runner or self.runner,
            which=_which_apt,
            client=self.client,
            secret_store=self.secret_store,
            metadata=InstanceMetadata("local", "local:test", "", "local", "local"),
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    def _saved_state(self):
        with open(self.config.state_file, "r", encoding="utf-8") as handle:
            return json.load(handle)

    def test_healthy_on_attempt_twelve_issues_and_persists_once(self):
        self.client.probe.side_effect = [False] * 11 + [True]
        self.client.create_token.return_value = "ctfd_abc123"
        state = self._orchestrator().run()

        self.assertEqual(state.outcome, "ready")
        self.assertEqual(state.health_attempts, 12)
        self.assertEqual(self.clock.now, 110)
        self.client.create_token.assert_called_once_with(
            self.config.admin_email, self.config.admin_password, self.config.token_name
        )
        self.secret_store.put_value.assert_called_once()
        args, _ = self.secret_store.put_value.call_args
        self.assertEqual(args[:2], ("ctfd/admin-token", "ctfd_abc123"))
        self.assertTrue(state.credential_persisted)
        self.assertTrue(os.path.exists(self.config.ready_marker))
        self.assertTrue(os.path.exists(self.config.compose_path))
        self.assertIn(
            ["docker", "compose", "-f", self.config.compose_path, "up", "-d", "--remove-orphans"],
            self.runner.commands,
        )
        saved = self._saved_state()
        self.assertEqual(saved["last_step"], "credential_persisted")
        self.assertNotIn("ctfd_abc123", json.dumps(saved))

    def test_health_timeout_skips_token_and_secret(self):
        self.client.probe.return_value = False
        state = self._orchestrator().run()

        self.assertEqual(state.outcome, "uncredentialed")
        self.assertTrue(state.services_started)
        self.assertFalse(state.health_confirmed)
        self.client.create_token.assert_not_called()
        self.secret_store.put_value.assert_not_called()
        self.assertLessEqual(self.clock.now, 30 * 10)
        self.assertFalse(os.path.exists(self.config.ready_marker))
        self.assertEqual(self._saved_state()["outcome"], "uncredentialed")

    def test_missing_token_value_is_not_fatal(self):
        self.client.probe.return_value = True
        self.client.create_token.return_value = None
        state = self._orchestrator().run()

        self.assertEqual(state.outcome, "uncredentialed")
        self.assertTrue(state.health_confirmed)
        self.assertIsNone(state.credential_issued)
        self.secret_store.put_value.assert_not_called()

    def test_install_failure_aborts_before_manifest(self):
        runner = RecordingRunner(fail_on=lambda args: args[:2] == ["apt-get", "install"])
        with self.assertRaises(FatalProvisioningError):
            self._orchestrator(runner).run()

        saved = self._saved_state()
        self.assertEqual(saved["outcome"], "failed")
        self.assertEqual(saved["failed_step"], "install_runtime")
        self.assertFalse(saved["runtime_ready"])
        self.assertFalse(os.path.exists(self.config.compose_path))
        self.client.probe.assert_not_called()

    def test_start_failure_is_fatal_and_skips_health(self):
        runner = RecordingRunner(fail_on=lambda args: "up" in args)
        with self.assertRaises(FatalProvisioningError):
            self._orchestrator(runner).run()

        saved = self._saved_state()
        self.assertEqual(saved["failed_step"], "start_services")
        self.assertTrue(saved["manifest_rendered"])
        self.assertFalse(saved["services_started"])
        self.client.probe.assert_not_called()
        self.client.create_token.assert_not_called()

    def test_secret_write_failure_is_recorded(self):
        self.client.probe.return_value = True
        self.client.create_token.return_value = "ctfd_abc123"
        self.secret_store.put_value.side_effect = SecretStoreError("secret write failed: AccessDeniedException")
        with self.assertRaises(SecretStoreError):
            self._orchestrator().run()

        saved = self._saved_state()
        self.assertEqual(saved["outcome"], "failed")
        self.assertEqual(saved["failed_step"], "persist_token")
        self.assertTrue(saved["credential_issued"])
        self.assertFalse(saved["credential_persisted"])

    @mock.patch("ctfd_orchestrator.secret_stores.boto3.client", side_effect=NoRegionError())
    def test_undiscoverable_region_is_recorded_as_persist_failure(self, client_mock):
        self.client.probe.return_value = True
        self.client.create_token.return_value = "ctfd_abc123"
        orchestrator = BootstrapOrchestrator(
            self.config,
            runner=self.runner,
            which=_which_apt,
            client=self.client,
            metadata=InstanceMetadata("local", "local:test", "", "local", "local"),
            sleep=self.clock.sleep,
            clock=self.clock,
        )
        with self.assertRaises(SecretStoreError):
            orchestrator.run()

        client_mock.assert_called_once_with("secretsmanager")
        saved = self._saved_state()
        self.assertEqual(saved["outcome"], "failed")
        self.assertEqual(saved["failed_step"], "persist_token")
        self.assertIn("NoRegionError", saved["error"])
        self.assertFalse(os.path.exists(self.config.ready_marker))


class BootstrapMainTests(TestCase):
    def test_main_reads_env_file_and_reports_failure(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            env_file = os.path.join(tmpdir, "bootstrap.env")
            with open(env_file, "w", encoding="utf-8") as handle:
                handle.write(f"CTFD_STATE_DIR={tmpdir}/state\nCTFD_SECRET_NAME=ctfd/test\n")
            orchestrator = mock.Mock()
            orchestrator.run.side_effect = FatalProvisioningError("install_runtime", "boom")
            with mock.patch.dict(os.environ, {"CTFD_ENV_FILE": env_file}, clear=False):
                with mock.patch.object(bootstrap, "get_instance_metadata") as metadata_mock:
                    metadata_mock.return_value = InstanceMetadata("local", "local:test", "", "local", "local")
                    with mock.patch.object(bootstrap, "BootstrapOrchestrator", return_value=orchestrator) as ctor:
                        exit_code = bootstrap.main()
        self.assertEqual(exit_code, 1)
        config = ctor.call_args[0][0]
        self.assertEqual(config.secret_name, "ctfd/test")
        self.assertEqual(config.state_dir, f"{tmpdir}/state")
