import logging
import os
import re
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import CredentialUnavailable, SecretStoreError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"ResourceNotFoundException"}
_PENDING_DELETION_PATTERN = re.compile(r"scheduled for deletion|marked for deletion", re.IGNORECASE)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _error_message(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Message") or "")


def _is_pending_deletion(exc: ClientError) -> bool:
    return _error_code(exc) == "InvalidRequestException" and bool(_PENDING_DELETION_PATTERN.search(_error_message(exc)))


class SecretsManagerStore:
    store_type = "aws_secrets_manager"

    def __init__(self, region: str = "", client: Any = None):
        self.region = (region or "").strip()
        if client is not None:
            self.client = client
        else:
            try:
                self.client = (
                    boto3.client("secretsmanager", region_name=self.region)
                    if self.region
                    else boto3.client("secretsmanager")
                )
            except BotoCoreError as exc:
                raise SecretStoreError(f"secret store client unavailable: {exc.__class__.__name__}: {exc}") from exc

    def get_value(self, name: str) -> str:
        try:
            response = self.client.get_secret_value(SecretId=name)
        except ClientError as exc:
            code = _error_code(exc)
            if code in _NOT_FOUND_CODES:
                raise CredentialUnavailable(f"secret {name} has no current value") from exc
            if _is_pending_deletion(exc):
                raise CredentialUnavailable(f"secret {name} is scheduled for deletion") from exc
            raise CredentialUnavailable(f"secret read failed: {code or exc.__class__.__name__}") from exc
        except BotoCoreError as exc:
            raise CredentialUnavailable(f"secret store unreachable: {exc.__class__.__name__}") from exc
        value = str(response.get("SecretString") or "").strip()
        if not value:
            raise CredentialUnavailable(f"secret {name} has an empty value")
        return value

    def put_value(self, name: str, value: str, description: str = "") -> Dict[str, Any]:
        if not value:
            raise SecretStoreError("secret value is required")
        try:
            return self._put(name, value)
        except ClientError as exc:
            code = _error_code(exc)
            if code in _NOT_FOUND_CODES:
                return self._create(name, value, description)
            if _is_pending_deletion(exc):
                logger.warning("Secret %s is scheduled for deletion; restoring before write.", name)
                self._restore(name)
                return self._put_or_raise(name, value)
            raise SecretStoreError(f"secret write failed: {code or exc.__class__.__name__}") from exc
        except BotoCoreError as exc:
            raise SecretStoreError(f"secret write failed: {exc.__class__.__name__}") from exc

    def _put(self, name: str, value: str) -> Dict[str, Any]:
        response = self.client.put_secret_value(SecretId=name, SecretString=value)
        return {"name": name, "arn": str(response.get("ARN") or ""), "version_id": str(response.get("VersionId") or "")}

    def _put_or_raise(self, name: str, value: str) -> Dict[str, Any]:
        try:
            return self._put(name, value)
        except (ClientError, BotoCoreError) as exc:
            raise SecretStoreError(f"secret write failed after restore: {exc.__class__.__name__}") from exc

    def _create(self, name: str, value: str, description: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "Name": name,
            "SecretString": value,
            "Tags": [{"Key": "ctfd:managed", "Value": "true"}],
        }
        if description:
            kwargs["Description"] = description
        try:
            response = self.client.create_secret(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise SecretStoreError(f"secret create failed: {exc.__class__.__name__}") from exc
        logger.info("Created secret %s", name)
        return {"name": name, "arn": str(response.get("ARN") or ""), "version_id": str(response.get("VersionId") or "")}

    def _restore(self, name: str) -> None:
        try:
            self.client.restore_secret(SecretId=name)
        except (ClientError, BotoCoreError) as exc:
            raise SecretStoreError(f"secret restore failed: {exc.__class__.__name__}") from exc


def resolve_secret_ref(ref_text: str, region: str = "") -> Optional[str]:
    value = str(ref_text or "").strip()
    if not value:
        return None
    if value.startswith("env:"):
        return os.environ.get(value.split(":", 1)[1].strip()) or None
    if value.startswith("aws.secrets_manager:"):
        try:
            store = SecretsManagerStore(region=region)
            return store.get_value(value.split(":", 1)[1].strip())
        except SecretStoreError as exc:
            logger.warning("Secret reference %s did not resolve: %s", value, exc)
            return None
    return value
