import json
from typing import Any, Dict

import boto3


class AwsSnsNotifier:
    notifier_type = "aws_sns"

    def __init__(self, config: Dict[str, Any], client: Any = None):
        self.config = config or {}
        self._client = client

    def _get_client(self):
        if self._client is None:
            region = str(self.config.get("region") or "").strip()
            self._client = boto3.client("sns", region_name=region) if region else boto3.client("sns")
        return self._client

    def notify(self, report: Dict[str, Any]):
        topic_arn = str(self.config.get("topic_arn") or "").strip()
        if not topic_arn:
            return
        prefix = str(self.config.get("subject_prefix") or "").strip()
        failures = report.get("failures") or []
        status = report.get("status") or "failed"
        subject = f"{prefix} {status} {report.get('key') or ''}".strip()
        body = {
            "bucket": report.get("bucket"),
            "key": report.get("key"),
            "status": status,
            "state": report.get("state"),
            "error_kind": report.get("error_kind"),
            "error": report.get("error"),
            "content_sha256": report.get("content_sha256"),
            "failures": failures,
        }
        attrs = {
            "status": {"DataType": "String", "StringValue": str(status)},
            "failure_count": {"DataType": "Number", "StringValue": str(len(failures))},
        }
        self._get_client().publish(
            TopicArn=topic_arn,
            Subject=subject[:100],
            Message=json.dumps(body, default=str),
            MessageAttributes=attrs,
        )
