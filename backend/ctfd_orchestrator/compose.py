import hashlib
import os
import tempfile
from typing import Any, Dict

import yaml

from .config import DeploymentConfig

MANIFEST_HEADER = "# Rendered by ctfd-orchestrator. Local edits are overwritten on re-render.\n"
UPLOAD_FOLDER = "/var/uploads"
LOG_FOLDER = "/var/log/CTFd"


def _database_url(config: DeploymentConfig) -> str:
    return f"mysql+pymysql://{config.db_user}:{config.db_password}@db/{config.db_name}"


def build_manifest(config: DeploymentConfig) -> Dict[str, Any]:
    if not config.secret_key:
        raise ValueError("secret_key is required to render the manifest")
    data_root = config.data_root.rstrip("/")
    return {
        "services": {
            "ctfd": {
                "image": config.ctfd_image,
                "restart": "always",
                "ports": [f"{config.host_port}:{config.app_port}"],
                "environment": {
                    "DATABASE_URL": _database_url(config),
                    "UPLOAD_FOLDER": UPLOAD_FOLDER,
                    "LOG_FOLDER": LOG_FOLDER,
                    "SECRET_KEY": config.secret_key,
                    "WORKERS": str(config.workers),
                    "REVERSE_PROXY": "true",
                    "ACCESS_LOG": "-",
                    "ERROR_LOG": "-",
                    "CTFD_ADMIN_EMAIL": config.admin_email,
                    "CTFD_ADMIN_PASSWORD": config.admin_password,
                },
                "volumes": [
                    f"{data_root}/uploads:{UPLOAD_FOLDER}",
                    f"{data_root}/logs:{LOG_FOLDER}",
                ],
                "depends_on": ["db"],
            },
            "db": {
                "image": config.db_image,
                "restart": "always",
                "environment": {
                    "MARIADB_ROOT_PASSWORD": config.db_root_password,
                    "MARIADB_USER": config.db_user,
                    "MARIADB_PASSWORD": config.db_password,
                    "MARIADB_DATABASE": config.db_name,
                },
                "volumes": [f"{data_root}/mysql:/var/lib/mysql"],
                "command": [
                    "mysqld",
                    "--character-set-server=utf8mb4",
                    "--collation-server=utf8mb4_unicode_ci",
                    "--wait_timeout=28800",
                    "--log-warnings=0",
                ],
            },
        },
    }


def render_manifest(config: DeploymentConfig) -> str:
    body = yaml.safe_dump(build_manifest(config), sort_keys=False, default_flow_style=False)
    return MANIFEST_HEADER + body


def manifest_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def write_manifest(content: str, path: str) -> str:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".compose-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    return manifest_digest(content)
