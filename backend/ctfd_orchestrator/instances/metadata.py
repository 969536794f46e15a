import logging
import socket
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)

IMDS_BASE = "http://169.254.169.254/latest"
IMDS_TOKEN_URL = f"{IMDS_BASE}/api/token"
IMDS_IDENTITY_URL = f"{IMDS_BASE}/dynamic/instance-identity/document"


@dataclass
class InstanceMetadata:
    substrate: str
    instance_id: str
    region: str
    instance_type: str
    ami_id: str


def discover_ec2_identity() -> Optional[InstanceMetadata]:
    token = _imds_token()
    if not token:
        return None
    headers = {"X-aws-ec2-metadata-token": token}
    try:
        doc = requests.get(IMDS_IDENTITY_URL, headers=headers, timeout=0.5)
        doc.raise_for_status()
        payload = doc.json()
    except (requests.RequestException, ValueError):
        return None
    instance_id = payload.get("instanceId", "")
    if not instance_id:
        return None
    return InstanceMetadata(
        substrate="ec2",
        instance_id=instance_id,
        region=payload.get("region", "") or "unknown",
        instance_type=payload.get("instanceType", "") or "unknown",
        ami_id=payload.get("imageId", "") or "unknown",
    )


def discover_local_identity() -> InstanceMetadata:
    hostname = socket.gethostname()
    return InstanceMetadata(
        substrate="local",
        instance_id=f"local:{hostname}",
        region="",
        instance_type="local",
        ami_id="local",
    )


def get_instance_metadata() -> InstanceMetadata:
    return discover_ec2_identity() or discover_local_identity()


def resolve_region(configured: str, metadata: Optional[InstanceMetadata] = None) -> str:
    if configured:
        return configured
    if metadata and metadata.region and metadata.region != "unknown":
        return metadata.region
    return ""


def _imds_token() -> Optional[str]:
    try:
        response = requests.put(
            IMDS_TOKEN_URL,
            headers={"X-aws-ec2-metadata-token-ttl-seconds": "60"},
            timeout=0.3,
        )
        response.raise_for_status()
        return response.text
    except requests.RequestException:
        return None
