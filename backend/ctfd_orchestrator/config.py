import logging
import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

DEFAULT_CTFD_IMAGE = "ctfd/ctfd:3.7.4"
DEFAULT_DB_IMAGE = "mariadb:10.11"
DEFAULT_SECRET_NAME = "ctfd/admin-token"
DEFAULT_ADMIN_EMAIL = "admin@ctfd.local"
DEFAULT_ADMIN_PASSWORD = "ctfd-admin-password"
DEFAULT_TOKEN_NAME = "ctfd-orchestrator"
DEFAULT_SUFFIXES: Tuple[str, ...] = (".yaml", ".yml", ".json")
ENV_FILE_PATH = "/etc/ctfd-orchestrator/bootstrap.env"


def _get(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return str(environ.get(name, "") or "").strip() or default


def _get_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(environ, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(environ, name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _get_list(environ: Mapping[str, str], name: str, default: Tuple[str, ...]) -> List[str]:
    raw = _get(environ, name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def aws_region_from_env(environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    return _get(env, "CTFD_AWS_REGION") or _get(env, "AWS_REGION") or _get(env, "AWS_DEFAULT_REGION")


def load_env_file(path: str = ENV_FILE_PATH) -> Dict[str, str]:
    """Read a KEY=VALUE file; quoted values follow shell quoting, as written by ``shlex.quote``."""
    env_path = Path(path)
    if not env_path.exists():
        return {}
    values: Dict[str, str] = {}
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if value[:1] in {"'", '"'}:
            try:
                value = " ".join(shlex.split(value))
            except ValueError as exc:
                raise ValueError(f"{path}: unbalanced quotes in {key.strip()}") from exc
        values[key.strip()] = value
    return values


@dataclass
class DeploymentConfig:
    ctfd_image: str = DEFAULT_CTFD_IMAGE
    db_image: str = DEFAULT_DB_IMAGE
    host_port: int = 80
    app_port: int = 8000
    workers: int = 1
    db_name: str = "ctfd"
    db_user: str = "ctfd"
    db_password: str = "ctfd"
    db_root_password: str = "ctfd"
    secret_key: str = ""
    admin_email: str = DEFAULT_ADMIN_EMAIL
    admin_password: str = DEFAULT_ADMIN_PASSWORD
    token_name: str = DEFAULT_TOKEN_NAME
    secret_name: str = DEFAULT_SECRET_NAME
    aws_region: str = ""
    base_url: str = ""
    compose_path: str = "/opt/ctfd/docker-compose.yml"
    data_root: str = "/opt/ctfd/data"
    state_dir: str = "/var/lib/ctfd"
    health_max_attempts: int = 30
    health_interval: float = 10.0
    health_request_timeout: float = 5.0

    @property
    def app_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.host_port == 80:
            return "http://127.0.0.1"
        return f"http://127.0.0.1:{self.host_port}"

    @property
    def state_file(self) -> str:
        return os.path.join(self.state_dir, "bootstrap-state.json")

    @property
    def ready_marker(self) -> str:
        return os.path.join(self.state_dir, "READY")

    @property
    def secret_key_file(self) -> str:
        return os.path.join(self.state_dir, "secret-key")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeploymentConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            ctfd_image=_get(env, "CTFD_IMAGE", defaults.ctfd_image),
            db_image=_get(env, "CTFD_DB_IMAGE", defaults.db_image),
            host_port=_get_int(env, "CTFD_HOST_PORT", defaults.host_port),
            app_port=_get_int(env, "CTFD_APP_PORT", defaults.app_port),
            workers=_get_int(env, "CTFD_WORKERS", defaults.workers),
            db_name=_get(env, "CTFD_DB_NAME", defaults.db_name),
            db_user=_get(env, "CTFD_DB_USER", defaults.db_user),
            db_password=_get(env, "CTFD_DB_PASSWORD", defaults.db_password),
            db_root_password=_get(env, "CTFD_DB_ROOT_PASSWORD", defaults.db_root_password),
            secret_key=_get(env, "CTFD_SECRET_KEY"),
            admin_email=_get(env, "CTFD_ADMIN_EMAIL", defaults.admin_email),
            admin_password=_get(env, "CTFD_ADMIN_PASSWORD", defaults.admin_password),
            token_name=_get(env, "CTFD_TOKEN_NAME", defaults.token_name),
            secret_name=_get(env, "CTFD_SECRET_NAME", defaults.secret_name),
            aws_region=aws_region_from_env(env),
            base_url=_get(env, "CTFD_URL"),
            compose_path=_get(env, "CTFD_COMPOSE_PATH", defaults.compose_path),
            data_root=_get(env, "CTFD_DATA_ROOT", defaults.data_root),
            state_dir=_get(env, "CTFD_STATE_DIR", defaults.state_dir),
            health_max_attempts=_get_int(env, "CTFD_HEALTH_MAX_ATTEMPTS", defaults.health_max_attempts),
            health_interval=_get_float(env, "CTFD_HEALTH_INTERVAL", defaults.health_interval),
            health_request_timeout=_get_float(env, "CTFD_HEALTH_REQUEST_TIMEOUT", defaults.health_request_timeout),
        )

    def to_env(self) -> Dict[str, str]:
        mapping = {
            "ctfd_image": "CTFD_IMAGE",
            "db_image": "CTFD_DB_IMAGE",
            "host_port": "CTFD_HOST_PORT",
            "app_port": "CTFD_APP_PORT",
            "workers": "CTFD_WORKERS",
            "db_name": "CTFD_DB_NAME",
            "db_user": "CTFD_DB_USER",
            "db_password": "CTFD_DB_PASSWORD",
            "db_root_password": "CTFD_DB_ROOT_PASSWORD",
            "secret_key": "CTFD_SECRET_KEY",
            "admin_email": "CTFD_ADMIN_EMAIL",
            "admin_password": "CTFD_ADMIN_PASSWORD",
            "token_name": "CTFD_TOKEN_NAME",
            "secret_name": "CTFD_SECRET_NAME",
            "aws_region": "CTFD_AWS_REGION",
            "base_url": "CTFD_URL",
            "compose_path": "CTFD_COMPOSE_PATH",
            "data_root": "CTFD_DATA_ROOT",
            "state_dir": "CTFD_STATE_DIR",
            "health_max_attempts": "CTFD_HEALTH_MAX_ATTEMPTS",
            "health_interval": "CTFD_HEALTH_INTERVAL",
            "health_request_timeout": "CTFD_HEALTH_REQUEST_TIMEOUT",
        }
        env: Dict[str, str] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value in ("", None):
                continue
            env[mapping[item.name]] = str(value)
        return env


@dataclass
class SyncConfig:
    secret_name: str = DEFAULT_SECRET_NAME
    ctfd_url: str = ""
    aws_region: str = ""
    suffixes: List[str] = field(default_factory=lambda: list(DEFAULT_SUFFIXES))
    request_timeout: float = 10.0
    default_state: str = "visible"
    failure_channels: List[str] = field(default_factory=lambda: ["log"])
    sns_topic_arn: str = ""
    sns_subject_prefix: str = "[ctfd-sync]"
    discord_webhook_ref: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            secret_name=_get(env, "CTFD_SECRET_NAME", defaults.secret_name),
            ctfd_url=_get(env, "CTFD_URL").rstrip("/"),
            aws_region=aws_region_from_env(env),
            suffixes=[s.lower() for s in _get_list(env, "CTFD_SYNC_SUFFIXES", DEFAULT_SUFFIXES)],
            request_timeout=_get_float(env, "CTFD_SYNC_REQUEST_TIMEOUT", defaults.request_timeout),
            default_state=_get(env, "CTFD_SYNC_DEFAULT_STATE", defaults.default_state),
            failure_channels=[c.lower() for c in _get_list(env, "CTFD_SYNC_FAILURE_CHANNELS", ("log",))],
            sns_topic_arn=_get(env, "CTFD_SYNC_SNS_TOPIC_ARN"),
            sns_subject_prefix=_get(env, "CTFD_SYNC_SNS_SUBJECT_PREFIX", defaults.sns_subject_prefix),
            discord_webhook_ref=_get(env, "CTFD_SYNC_DISCORD_WEBHOOK_REF"),
        )


def configure_logging(environ: Optional[Mapping[str, str]] = None) -> None:
    env = os.environ if environ is None else environ
    level_name = _get(env, "CTFD_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if root.handlers:
        # Lambda installs its own handler before our code runs.
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
