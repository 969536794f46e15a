import argparse
import base64
import os
import secrets
import shlex
import sys
from dataclasses import replace
from typing import List, Optional

from .config import ENV_FILE_PATH, DeploymentConfig, configure_logging

DEFAULT_PACKAGE_SOURCE = os.environ.get("CTFD_ORCHESTRATOR_PACKAGE", "ctfd-orchestrator")
VENV_DIR = "/opt/ctfd-orchestrator/venv"
ENV_HEREDOC = "CTFD_BOOTSTRAP_ENV"
# EC2 rejects user data above 16 KiB before base64 encoding.
USER_DATA_LIMIT = 16 * 1024


def _env_file_body(config: DeploymentConfig) -> str:
    lines = []
    for key, value in sorted(config.to_env().items()):
        if "\n" in value or "\r" in value:
            raise ValueError(f"{key} must not contain newlines")
        lines.append(f"{key}={shlex.quote(value)}")
    return "\n".join(lines)


def build_user_data(config: DeploymentConfig, package_source: str = DEFAULT_PACKAGE_SOURCE) -> str:
    source = shlex.quote(package_source)
    env_dir = os.path.dirname(ENV_FILE_PATH)
    script = f"""#!/bin/bash
set -euo pipefail

LOG_FILE=/var/log/ctfd-bootstrap.log
exec > >(tee -a $LOG_FILE) 2>&1

if command -v apt-get >/dev/null 2>&1; then
  apt-get update
  apt-get install -y python3 python3-venv python3-pip
elif command -v dnf >/dev/null 2>&1; then
  dnf install -y python3 python3-pip
elif command -v yum >/dev/null 2>&1; then
  yum install -y python3 python3-pip
fi

python3 -m venv {VENV_DIR}
{VENV_DIR}/bin/pip install --upgrade pip
{VENV_DIR}/bin/pip install {source}

mkdir -p {env_dir}
(
  umask 077
  cat > {ENV_FILE_PATH} <<'{ENV_HEREDOC}'
{_env_file_body(config)}
{ENV_HEREDOC}
)

exec {VENV_DIR}/bin/ctfd-bootstrap
"""
    if len(script.encode("utf-8")) > USER_DATA_LIMIT:
        raise ValueError("rendered user data exceeds the 16 KiB EC2 limit")
    return script


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Render EC2 user data that bootstraps a CTFd host.")
    parser.add_argument("--package-source", default=DEFAULT_PACKAGE_SOURCE, help="pip requirement for this package")
    parser.add_argument("--output", default="-", help="file to write, '-' for stdout")
    parser.add_argument("--base64", action="store_true", help="base64-encode the output")
    parser.add_argument(
        "--generate-secret-key",
        action="store_true",
        help="bake a freshly generated CTFD_SECRET_KEY when none is configured",
    )
    args = parser.parse_args(argv)
    configure_logging()
    config = DeploymentConfig.from_env()
    if args.generate_secret_key and not config.secret_key:
        config = replace(config, secret_key=secrets.token_hex(32))
    try:
        user_data = build_user_data(config, args.package_source)
    except ValueError as exc:
        raise SystemExit(str(exc))
    if args.base64:
        user_data = base64.b64encode(user_data.encode("utf-8")).decode("ascii")
    if args.output == "-":
        sys.stdout.write(user_data)
    else:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(user_data)
    return 0


if __name__ == "__main__":
    sys.exit(main())
