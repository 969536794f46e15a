import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import unquote_plus

from ctfd_orchestrator.challenges import ChallengeDefinition, has_recognized_suffix, parse_challenges
from ctfd_orchestrator.config import SyncConfig, configure_logging
from ctfd_orchestrator.ctfd_api import CTFdClient
from ctfd_orchestrator.errors import ApiError, CredentialUnavailable, MalformedInput, ObjectUnavailable
from ctfd_orchestrator.notifications.registry import FailureReporter
from ctfd_orchestrator.secret_stores import SecretsManagerStore
from ctfd_orchestrator.storage.providers.s3 import S3ObjectStore

logger = logging.getLogger(__name__)

# Seconds kept in reserve so the handler returns before the invocation timeout.
DEADLINE_MARGIN = 2.0


class SyncState(str, Enum):
    RECEIVED = "received"
    SECRET_FETCHED = "secret_fetched"
    OBJECT_FETCHED = "object_fetched"
    PARSED = "parsed"
    APPLIED = "applied"
    FAILED = "failed"


class ErrorKind(str, Enum):
    CREDENTIAL_UNAVAILABLE = "CredentialUnavailable"
    OBJECT_UNAVAILABLE = "ObjectUnavailable"
    MALFORMED_INPUT = "MalformedInput"
    PER_RECORD_APPLY_FAILURE = "PerRecordApplyFailure"
    UNSUPPORTED_EVENT = "UnsupportedEvent"


@dataclass
class SyncEvent:
    bucket: str
    object_key: str
    event_type: str = "ObjectCreated:Put"

    @property
    def is_creation(self) -> bool:
        return self.event_type.startswith("ObjectCreated:") or self.event_type == "ObjectCreated"


@dataclass
class PerRecordApplyFailure:
    name: str
    error: str
    status_code: Optional[int] = None
    duplicate: bool = False


@dataclass
class SyncResult:
    bucket: str
    key: str
    state: SyncState = SyncState.RECEIVED
    status: str = "pending"
    error_kind: Optional[str] = None
    error: str = ""
    content_sha256: str = ""
    records: int = 0
    api_calls: int = 0
    applied: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[PerRecordApplyFailure] = field(default_factory=list)

    def fail(self, kind: ErrorKind, error: str) -> "SyncResult":
        self.state = SyncState.FAILED
        self.status = "failed"
        self.error_kind = kind.value
        self.error = error
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def events_from_notification(notification: Any) -> List[SyncEvent]:
    events: List[SyncEvent] = []
    records = _mapping(notification).get("Records")
    if not isinstance(records, list):
        return events
    for record in records:
        if not isinstance(record, dict):
            continue
        s3 = _mapping(record.get("s3"))
        bucket = str(_mapping(s3.get("bucket")).get("name") or "").strip()
        key = unquote_plus(str(_mapping(s3.get("object")).get("key") or ""))
        events.append(SyncEvent(bucket=bucket, object_key=key, event_type=str(record.get("eventName") or "")))
    return events


class SyncHandler:
    def __init__(
        self,
        *,
        secret_store: Any,
        object_store: Any,
        client_factory: Callable[[str, float], Any],
        secret_name: str,
        suffixes: Iterable[str],
        default_state: str = "visible",
        request_timeout: float = 10.0,
        reporter: Optional[FailureReporter] = None,
    ):
        self.secret_store = secret_store
        self.object_store = object_store
        self.client_factory = client_factory
        self.secret_name = secret_name
        self.suffixes = [s.lower() for s in suffixes]
        self.default_state = default_state
        self.request_timeout = request_timeout
        self.reporter = reporter or FailureReporter()

    def handle(self, event: SyncEvent, remaining_time: Optional[Callable[[], float]] = None) -> SyncResult:
        result = SyncResult(bucket=event.bucket, key=event.object_key)
        if not event.is_creation or not has_recognized_suffix(event.object_key, self.suffixes):
            result.status = "skipped"
            result.error_kind = ErrorKind.UNSUPPORTED_EVENT.value
            result.error = f"ignored {event.event_type or 'unknown'} event for {event.object_key}"
            logger.warning("Skipping s3://%s/%s: %s", event.bucket, event.object_key, result.error)
            return result

        try:
            token = self.secret_store.get_value(self.secret_name)
        except CredentialUnavailable as exc:
            return self._finish(result.fail(ErrorKind.CREDENTIAL_UNAVAILABLE, str(exc)))
        result.state = SyncState.SECRET_FETCHED

        try:
            stored = self.object_store.get_object(event.bucket, event.object_key)
        except ObjectUnavailable as exc:
            return self._finish(result.fail(ErrorKind.OBJECT_UNAVAILABLE, str(exc)))
        result.state = SyncState.OBJECT_FETCHED
        result.content_sha256 = stored.sha256

        try:
            definitions = parse_challenges(event.object_key, stored.content)
        except MalformedInput as exc:
            return self._finish(result.fail(ErrorKind.MALFORMED_INPUT, str(exc)))
        result.state = SyncState.PARSED
        result.records = len(definitions)

        client = self.client_factory(token, self.request_timeout)
        for definition in definitions:
            self._apply_one(client, definition, result, remaining_time)
        result.state = SyncState.APPLIED
        if not result.failures:
            result.status = "applied"
        elif result.applied:
            result.status = "partial"
            result.error_kind = ErrorKind.PER_RECORD_APPLY_FAILURE.value
        else:
            result.status = "failed"
            result.error_kind = ErrorKind.PER_RECORD_APPLY_FAILURE.value
        return self._finish(result)

    def _call_timeout(self, remaining_time: Optional[Callable[[], float]]) -> Optional[float]:
        """Timeout for the next API call, or None once the invocation deadline is too close."""
        if remaining_time is None:
            return self.request_timeout
        budget = remaining_time() - DEADLINE_MARGIN
        if budget <= 0:
            return None
        return min(self.request_timeout, budget)

    def _apply_one(
        self,
        client: Any,
        definition: ChallengeDefinition,
        result: SyncResult,
        remaining_time: Optional[Callable[[], float]] = None,
    ) -> None:
        timeout = self._call_timeout(remaining_time)
        if timeout is None:
            result.failures.append(
                PerRecordApplyFailure(name=definition.name, error="invocation deadline reached before apply")
            )
            return
        result.api_calls += 1
        try:
            created = client.create_challenge(definition.to_challenge_body(self.default_state), timeout=timeout)
        except ApiError as exc:
            level = logging.INFO if exc.duplicate else logging.WARNING
            logger.log(level, "Challenge %s not created: %s", definition.name, exc)
            result.failures.append(
                PerRecordApplyFailure(
                    name=definition.name,
                    error=str(exc),
                    status_code=exc.status_code,
                    duplicate=exc.duplicate,
                )
            )
            return
        challenge_id = created.get("id")
        errors: List[str] = []
        if challenge_id is not None:
            children = (
                [("flag", client.create_flag, flag) for flag in definition.flag_bodies()]
                + [("hint", client.create_hint, hint) for hint in definition.hint_bodies()]
                + [("tag", client.create_tag, tag) for tag in definition.tags]
            )
            for kind, create, body in children:
                timeout = self._call_timeout(remaining_time)
                if timeout is None:
                    errors.append(f"{kind}: invocation deadline reached")
                    continue
                result.api_calls += 1
                try:
                    create(challenge_id, body, timeout=timeout)
                except ApiError as exc:
                    errors.append(f"{kind}: {exc}")
        result.applied.append({"name": definition.name, "challenge_id": challenge_id})
        if errors:
            result.failures.append(PerRecordApplyFailure(name=definition.name, error="; ".join(errors)))
        logger.info("Created challenge %s id=%s", definition.name, challenge_id)

    def _finish(self, result: SyncResult) -> SyncResult:
        if result.status in {"failed", "partial"}:
            self.reporter.report(result.to_dict())
        else:
            logger.info(
                "Synced s3://%s/%s records=%s api_calls=%s sha256=%s",
                result.bucket,
                result.key,
                result.records,
                result.api_calls,
                result.content_sha256,
            )
        return result


def build_handler(config: SyncConfig) -> SyncHandler:
    if not config.ctfd_url:
        raise ValueError("CTFD_URL is required")
    return SyncHandler(
        secret_store=SecretsManagerStore(region=config.aws_region),
        object_store=S3ObjectStore(region=config.aws_region),
        client_factory=lambda token, timeout: CTFdClient(config.ctfd_url, token=token, timeout=timeout),
        secret_name=config.secret_name,
        suffixes=config.suffixes,
        default_state=config.default_state,
        request_timeout=config.request_timeout,
        reporter=FailureReporter.from_config(config),
    )


def _remaining_time_from(context: Any) -> Optional[Callable[[], float]]:
    if context is None or not hasattr(context, "get_remaining_time_in_millis"):
        return None
    return lambda: context.get_remaining_time_in_millis() / 1000.0


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    configure_logging()
    remaining_time = _remaining_time_from(context)
    try:
        handler = build_handler(SyncConfig.from_env())
    except Exception as exc:
        logger.exception("Challenge sync handler could not be configured")
        return {"results": [], "error": f"{exc.__class__.__name__}: {exc}"}
    results = []
    for sync_event in events_from_notification(event or {}):
        try:
            results.append(handler.handle(sync_event, remaining_time=remaining_time).to_dict())
        except Exception as exc:
            logger.exception("Unexpected error syncing s3://%s/%s", sync_event.bucket, sync_event.object_key)
            results.append(
                {"bucket": sync_event.bucket, "key": sync_event.object_key, "status": "failed", "error": str(exc)}
            )
    return {"results": results}


def _parse_s3_uri(uri: str) -> SyncEvent:
    if not uri.startswith("s3://") or "/" not in uri[5:]:
        raise argparse.ArgumentTypeError(f"expected s3://bucket/key, got {uri}")
    bucket, key = uri[5:].split("/", 1)
    return SyncEvent(bucket=bucket, object_key=key, event_type="ObjectCreated:Put")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a challenge asset from S3 into CTFd.")
    parser.add_argument("uri", type=_parse_s3_uri, help="s3://bucket/key of the challenge file")
    parser.add_argument("--ctfd-url", default="", help="override CTFD_URL")
    args = parser.parse_args(argv)
    configure_logging()
    config = SyncConfig.from_env()
    if args.ctfd_url:
        config.ctfd_url = args.ctfd_url.rstrip("/")
    try:
        handler = build_handler(config)
    except ValueError as exc:
        raise SystemExit(str(exc))
    result = handler.handle(args.uri)
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.status == "applied" else 1


if __name__ == "__main__":
    sys.exit(main())
