import logging
from typing import Any, Dict, List, Optional

from ctfd_orchestrator.config import SyncConfig
from ctfd_orchestrator.secret_stores import resolve_secret_ref

from .notifiers.aws_sns import AwsSnsNotifier
from .notifiers.discord import DiscordNotifier

logger = logging.getLogger(__name__)


class FailureReporter:
    def __init__(self, notifiers: Optional[List[Any]] = None):
        self.notifiers = list(notifiers or [])

    @classmethod
    def from_config(cls, config: SyncConfig) -> "FailureReporter":
        notifiers: List[Any] = []
        for channel in config.failure_channels:
            if channel == "log":
                continue
            if channel == "aws_sns":
                if not config.sns_topic_arn:
                    logger.warning("aws_sns failure channel enabled without CTFD_SYNC_SNS_TOPIC_ARN; skipping.")
                    continue
                notifiers.append(
                    AwsSnsNotifier(
                        {
                            "topic_arn": config.sns_topic_arn,
                            "region": config.aws_region,
                            "subject_prefix": config.sns_subject_prefix,
                        }
                    )
                )
            elif channel == "discord":
                webhook = resolve_secret_ref(config.discord_webhook_ref, region=config.aws_region)
                if not webhook:
                    logger.warning("discord failure channel enabled but webhook reference did not resolve; skipping.")
                    continue
                notifiers.append(DiscordNotifier({"username": "ctfd-sync"}, webhook))
            else:
                logger.warning("Unknown failure channel %s; skipping.", channel)
        return cls(notifiers)

    def report(self, report: Dict[str, Any]) -> List[str]:
        logger.error(
            "Challenge sync %s for s3://%s/%s state=%s kind=%s error=%s failed_records=%s",
            report.get("status"),
            report.get("bucket"),
            report.get("key"),
            report.get("state"),
            report.get("error_kind"),
            report.get("error"),
            len(report.get("failures") or []),
        )
        errors: List[str] = []
        for notifier in self.notifiers:
            try:
                notifier.notify(report)
            except Exception as exc:
                logger.warning("Failure notifier %s raised %s", getattr(notifier, "notifier_type", "unknown"), exc)
                errors.append(f"{getattr(notifier, 'notifier_type', 'unknown')}: {exc.__class__.__name__}")
        return errors
