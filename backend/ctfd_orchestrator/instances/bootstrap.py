import json
import logging
import os
import platform
import secrets
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ctfd_orchestrator.compose import render_manifest, write_manifest
from ctfd_orchestrator.config import ENV_FILE_PATH, DeploymentConfig, configure_logging, load_env_file
from ctfd_orchestrator.ctfd_api import CTFdClient
from ctfd_orchestrator.errors import FatalProvisioningError, HealthTimeout, InvalidTransition, SecretStoreError
from ctfd_orchestrator.retry import poll_until
from ctfd_orchestrator.secret_stores import SecretsManagerStore

from .metadata import InstanceMetadata, get_instance_metadata, resolve_region

logger = logging.getLogger(__name__)

COMPOSE_PLUGIN_VERSION = "v2.27.0"
COMPOSE_PLUGIN_DIR = "/usr/local/libexec/docker/cli-plugins"
COMMAND_TIMEOUT = 900
# uid/gid the ctfd/ctfd image runs as; bind mounts it writes to must be owned by it.
CTFD_CONTAINER_UID = 1001

Runner = Callable[[List[str], str], str]


class BootstrapStep(str, Enum):
    RUNTIME_READY = "runtime_ready"
    MANIFEST_RENDERED = "manifest_rendered"
    SERVICES_STARTED = "services_started"
    HEALTH_CONFIRMED = "health_confirmed"
    CREDENTIAL_ISSUED = "credential_issued"
    CREDENTIAL_PERSISTED = "credential_persisted"


STEP_CHAIN: List[BootstrapStep] = list(BootstrapStep)


@dataclass
class BootstrapState:
    runtime_ready: bool = False
    manifest_rendered: bool = False
    services_started: bool = False
    health_confirmed: bool = False
    credential_issued: Optional[str] = field(default=None, repr=False)
    credential_persisted: bool = False
    outcome: str = "pending"
    failed_step: str = ""
    error: str = ""
    health_attempts: int = 0
    manifest_sha256: str = ""

    def is_set(self, step: BootstrapStep) -> bool:
        return bool(getattr(self, step.value))

    def mark(self, step: BootstrapStep, token: Optional[str] = None) -> None:
        index = STEP_CHAIN.index(step)
        if self.is_set(step):
            raise InvalidTransition(f"{step.value} is already set")
        if index > 0 and not self.is_set(STEP_CHAIN[index - 1]):
            raise InvalidTransition(f"{step.value} requires {STEP_CHAIN[index - 1].value}")
        if step == BootstrapStep.CREDENTIAL_ISSUED:
            if not token:
                raise InvalidTransition("credential_issued requires a token")
            self.credential_issued = token
        else:
            setattr(self, step.value, True)

    @property
    def last_step(self) -> Optional[BootstrapStep]:
        reached = [step for step in STEP_CHAIN if self.is_set(step)]
        return reached[-1] if reached else None

    def to_dict(self) -> Dict[str, Any]:
        last = self.last_step
        return {
            "runtime_ready": self.runtime_ready,
            "manifest_rendered": self.manifest_rendered,
            "services_started": self.services_started,
            "health_confirmed": self.health_confirmed,
            "credential_issued": self.credential_issued is not None,
            "credential_persisted": self.credential_persisted,
            "last_step": last.value if last else None,
            "outcome": self.outcome,
            "failed_step": self.failed_step,
            "error": self.error,
            "health_attempts": self.health_attempts,
            "manifest_sha256": self.manifest_sha256,
        }


class HealthStatus(str, Enum):
    READY = "ready"
    UNAVAILABLE = "unavailable"


@dataclass
class HealthResult:
    status: HealthStatus
    attempts: int
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.status == HealthStatus.READY


def run_command(args: List[str], step: str) -> str:
    logger.info("[%s] $ %s", step, " ".join(args))
    try:
        completed = subprocess.run(args, check=True, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
    except FileNotFoundError as exc:
        raise FatalProvisioningError(step, f"command not found: {args[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise FatalProvisioningError(step, f"command timed out after {COMMAND_TIMEOUT}s: {' '.join(args)}") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()[-2000:]
        raise FatalProvisioningError(step, f"command exited {exc.returncode}: {' '.join(args)}: {stderr}") from exc
    return completed.stdout or ""


def _package_commands(which: Callable[[str], Optional[str]]) -> List[List[str]]:
    if which("apt-get"):
        return [
            ["apt-get", "update"],
            ["apt-get", "install", "-y", "docker.io", "curl"],
        ]
    if which("dnf"):
        return [["dnf", "install", "-y", "docker"]]
    if which("yum"):
        return [["yum", "install", "-y", "docker"]]
    raise FatalProvisioningError("install_runtime", "no supported package manager found (apt-get, dnf, yum)")


def _compose_available(runner: Runner) -> bool:
    try:
        runner(["docker", "compose", "version"], "install_runtime")
    except FatalProvisioningError:
        return False
    return True


def install_runtime(runner: Runner = run_command, which: Callable[[str], Optional[str]] = shutil.which) -> None:
    for command in _package_commands(which):
        runner(command, "install_runtime")
    runner(["systemctl", "enable", "--now", "docker"], "install_runtime")
    if _compose_available(runner):
        return
    arch = platform.machine() or "x86_64"
    target = f"{COMPOSE_PLUGIN_DIR}/docker-compose"
    url = f"https://github.com/docker/compose/releases/download/{COMPOSE_PLUGIN_VERSION}/docker-compose-linux-{arch}"
    runner(["mkdir", "-p", COMPOSE_PLUGIN_DIR], "install_runtime")
    runner(["curl", "-fsSL", url, "-o", target], "install_runtime")
    runner(["chmod", "+x", target], "install_runtime")
    if not _compose_available(runner):
        raise FatalProvisioningError("install_runtime", "docker compose plugin unavailable after install")


def ensure_secret_key(config: DeploymentConfig) -> str:
    if config.secret_key:
        return config.secret_key
    path = config.secret_key_file
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as handle:
            existing = handle.read().strip()
        if existing:
            return existing
    os.makedirs(config.state_dir, exist_ok=True)
    value = secrets.token_hex(32)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(value)
    return value


def start_services(manifest_path: str, runner: Runner = run_command) -> None:
    runner(["docker", "compose", "-f", manifest_path, "up", "-d", "--remove-orphans"], "start_services")


def await_health(
    probe: Callable[[], bool],
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> HealthResult:
    result = poll_until(probe, max_attempts=max_attempts, interval=interval, sleep=sleep, clock=clock, label="health probe")
    status = HealthStatus.READY if result.succeeded else HealthStatus.UNAVAILABLE
    return HealthResult(status=status, attempts=result.attempts, elapsed=result.elapsed)


def issue_admin_token(client: CTFdClient, admin_email: str, admin_password: str, token_name: str) -> Optional[str]:
    token = client.create_token(admin_email, admin_password, token_name)
    if not token:
        logger.warning("Token response did not contain a usable token value.")
    return token


def persist_token(secret_store: Any, secret_name: str, token: str) -> Dict[str, Any]:
    return secret_store.put_value(secret_name, token, description="CTFd admin API token")


class BootstrapOrchestrator:
    def __init__(
        self,
        config: DeploymentConfig,
        *,
        runner: Runner = run_command,
        which: Callable[[str], Optional[str]] = shutil.which,
        client: Optional[CTFdClient] = None,
        secret_store: Any = None,
        metadata: Optional[InstanceMetadata] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runner = runner
        self.which = which
        self.client = client or CTFdClient(config.app_base_url, timeout=config.health_request_timeout)
        self._secret_store = secret_store
        self._metadata = metadata
        self.sleep = sleep
        self.clock = clock

    @property
    def secret_store(self) -> Any:
        if self._secret_store is None:
            metadata = self._metadata or get_instance_metadata()
            self._secret_store = SecretsManagerStore(region=resolve_region(self.config.aws_region, metadata))
        return self._secret_store

    def run(self) -> BootstrapState:
        state = BootstrapState()
        self._save(state)
        try:
            install_runtime(self.runner, self.which)
            self._advance(state, BootstrapStep.RUNTIME_READY)

            secret_key = ensure_secret_key(self.config)
            manifest = render_manifest(_with_secret_key(self.config, secret_key))
            self._prepare_data_dirs()
            state.manifest_sha256 = write_manifest(manifest, self.config.compose_path)
            self._advance(state, BootstrapStep.MANIFEST_RENDERED)

            start_services(self.config.compose_path, self.runner)
            self._advance(state, BootstrapStep.SERVICES_STARTED)
        except FatalProvisioningError as exc:
            self._record_failure(state, exc.step, exc)
            raise
        except OSError as exc:
            step = _next_step_name(state)
            error = FatalProvisioningError(step, str(exc))
            self._record_failure(state, step, error)
            raise error from exc

        try:
            self._confirm_health(state)
        except HealthTimeout as exc:
            state.outcome = "uncredentialed"
            state.error = str(exc)
            logger.warning("%s; skipping token issuance. Services are left running.", exc)
            self._save(state)
            return state

        token = issue_admin_token(
            self.client, self.config.admin_email, self.config.admin_password, self.config.token_name
        )
        if not token:
            state.outcome = "uncredentialed"
            state.error = "token issuance returned no usable token"
            self._save(state)
            return state
        self._advance(state, BootstrapStep.CREDENTIAL_ISSUED, token)

        try:
            persist_token(self.secret_store, self.config.secret_name, token)
        except SecretStoreError as exc:
            state.outcome = "failed"
            state.failed_step = "persist_token"
            state.error = str(exc)
            logger.error("Could not persist admin token to %s: %s", self.config.secret_name, exc)
            self._save(state)
            raise
        self._advance(state, BootstrapStep.CREDENTIAL_PERSISTED)
        state.outcome = "ready"
        self._save(state)
        self._touch_ready_marker()
        logger.info("Bootstrap complete; admin token stored in %s", self.config.secret_name)
        return state

    def _confirm_health(self, state: BootstrapState) -> None:
        cfg = self.config
        logger.info(
            "Waiting for %s (max %s attempts, %ss interval)", cfg.app_base_url, cfg.health_max_attempts, cfg.health_interval
        )
        result = await_health(
            lambda: self.client.probe(timeout=cfg.health_request_timeout),
            cfg.health_max_attempts,
            cfg.health_interval,
            sleep=self.sleep,
            clock=self.clock,
        )
        state.health_attempts = result.attempts
        if not result.ready:
            raise HealthTimeout(f"application not ready after {result.attempts} attempts ({result.elapsed:.0f}s)")
        logger.info("Application ready after %s attempt(s) (%.0fs)", result.attempts, result.elapsed)
        self._advance(state, BootstrapStep.HEALTH_CONFIRMED)

    def _advance(self, state: BootstrapState, step: BootstrapStep, token: Optional[str] = None) -> None:
        state.mark(step, token)
        logger.info("Bootstrap step reached: %s", step.value)
        self._save(state)

    def _record_failure(self, state: BootstrapState, step: str, exc: FatalProvisioningError) -> None:
        state.outcome = "failed"
        state.failed_step = step
        state.error = str(exc)
        logger.error("Bootstrap failed during %s: %s", step, exc)
        self._save(state)

    def _prepare_data_dirs(self) -> None:
        root = self.config.data_root
        for name in ("uploads", "logs", "mysql"):
            path = os.path.join(root, name)
            os.makedirs(path, exist_ok=True)
            if name != "mysql" and hasattr(os, "geteuid") and os.geteuid() == 0:
                os.chown(path, CTFD_CONTAINER_UID, CTFD_CONTAINER_UID)

    def _save(self, state: BootstrapState) -> None:
        path = self.config.state_file
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(state.to_dict(), handle, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.warning("Could not write bootstrap state to %s: %s", path, exc)

    def _touch_ready_marker(self) -> None:
        try:
            with open(self.config.ready_marker, "w", encoding="utf-8") as handle:
                handle.write("")
        except OSError as exc:
            logger.warning("Could not write ready marker %s: %s", self.config.ready_marker, exc)


def _with_secret_key(config: DeploymentConfig, secret_key: str) -> DeploymentConfig:
    if config.secret_key == secret_key:
        return config
    return replace(config, secret_key=secret_key)


def _next_step_name(state: BootstrapState) -> str:
    names = {
        None: "install_runtime",
        BootstrapStep.RUNTIME_READY: "render_manifest",
        BootstrapStep.MANIFEST_RENDERED: "start_services",
    }
    return names.get(state.last_step, "start_services")


def main() -> int:
    env: Dict[str, str] = dict(load_env_file(os.environ.get("CTFD_ENV_FILE", ENV_FILE_PATH)))
    env.update(os.environ)
    configure_logging(env)
    config = DeploymentConfig.from_env(env)
    metadata = get_instance_metadata()
    logger.info(
        "Bootstrapping CTFd on substrate=%s instance_id=%s region=%s",
        metadata.substrate,
        metadata.instance_id,
        resolve_region(config.aws_region, metadata) or "unknown",
    )
    orchestrator = BootstrapOrchestrator(config, metadata=metadata)
    try:
        state = orchestrator.run()
    except (FatalProvisioningError, SecretStoreError) as exc:
        logger.error("Bootstrap aborted: %s", exc)
        return 1
    if state.outcome != "ready":
        logger.warning("Bootstrap finished without a stored credential (%s).", state.error or state.outcome)
    return 0


if __name__ == "__main__":
    sys.exit(main())
