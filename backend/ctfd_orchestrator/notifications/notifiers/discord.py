from typing import Any, Dict

import requests


class DiscordNotifier:
    notifier_type = "discord"

    def __init__(self, config: Dict[str, Any], webhook_url: str):
        self.config = config or {}
        self.webhook_url = webhook_url

    def notify(self, report: Dict[str, Any]):
        status = str(report.get("status") or "failed")
        location = f"s3://{report.get('bucket') or '?'}/{report.get('key') or '?'}"
        lines = [f"[{status.upper()}] challenge sync: {location}"]
        if report.get("error_kind"):
            lines.append(f"{report.get('error_kind')}: {report.get('error') or ''}".strip())
        failures = report.get("failures") or []
        if failures:
            lines.append("Failed records:")
            for failure in failures[:20]:
                marker = " (duplicate)" if failure.get("duplicate") else ""
                lines.append(f"- {failure.get('name')}{marker}: {failure.get('error')}")
            if len(failures) > 20:
                lines.append(f"... and {len(failures) - 20} more")
        payload: Dict[str, Any] = {
            "content": "\n".join(lines)[:1900],
        }
        username = str((self.config.get("username") or "")).strip()
        if username:
            payload["username"] = username
        requests.post(self.webhook_url, json=payload, timeout=10)
