import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List

import yaml
from jsonschema import Draft202012Validator

from .errors import MalformedInput

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


@lru_cache(maxsize=None)
def _validator() -> Draft202012Validator:
    with open(SCHEMAS_DIR / "challenge.schema.json", "r", encoding="utf-8") as handle:
        schema = json.load(handle)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def key_suffix(key: str) -> str:
    name = str(key or "").rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return "." + name.rsplit(".", 1)[-1].lower()


def has_recognized_suffix(key: str, suffixes: Iterable[str]) -> bool:
    suffix = key_suffix(key)
    return bool(suffix) and suffix in {s.lower() for s in suffixes}


@dataclass
class ChallengeDefinition:
    name: str
    category: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_challenge_body(self, default_state: str = "visible") -> Dict[str, Any]:
        payload = self.payload
        ctype = str(payload.get("type") or "standard")
        body: Dict[str, Any] = {
            "name": self.name,
            "category": self.category,
            "description": str(payload.get("description") or ""),
            "state": str(payload.get("state") or default_state),
            "type": ctype,
        }
        if payload.get("connection_info"):
            body["connection_info"] = str(payload["connection_info"])
        if payload.get("max_attempts") is not None:
            body["max_attempts"] = int(payload["max_attempts"])
        if ctype == "dynamic":
            body["initial"] = int(payload["initial"])
            body["decay"] = int(payload["decay"])
            body["minimum"] = int(payload["minimum"])
            body["function"] = str(payload.get("function") or "linear")
            body["value"] = int(payload["initial"])
        else:
            body["value"] = int(payload.get("value") or 0)
        return body

    def flag_bodies(self) -> List[Dict[str, Any]]:
        bodies = []
        for flag in self.payload.get("flags") or []:
            if isinstance(flag, str):
                bodies.append({"content": flag, "type": "static", "data": ""})
            else:
                bodies.append(
                    {
                        "content": flag["content"],
                        "type": flag.get("type") or "static",
                        "data": flag.get("data") or "",
                    }
                )
        return bodies

    def hint_bodies(self) -> List[Dict[str, Any]]:
        bodies = []
        for hint in self.payload.get("hints") or []:
            if isinstance(hint, str):
                bodies.append({"content": hint, "cost": 0})
            else:
                bodies.append({"content": hint["content"], "cost": int(hint.get("cost") or 0)})
        return bodies

    @property
    def tags(self) -> List[str]:
        return [str(tag) for tag in self.payload.get("tags") or []]


def decode_asset(key: str, content: bytes) -> Any:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedInput(f"{key}: not valid UTF-8") from exc
    if key_suffix(key) == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedInput(f"{key}: invalid JSON at line {exc.lineno}: {exc.msg}") from exc
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MalformedInput(f"{key}: invalid YAML: {exc}") from exc


def _records(document: Any, key: str) -> List[Any]:
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        if "challenges" in document:
            records = document.get("challenges")
            if not isinstance(records, list):
                raise MalformedInput(f"{key}: 'challenges' must be a list")
            return records
        return [document]
    raise MalformedInput(f"{key}: expected a mapping or a list of mappings")


def parse_challenges(key: str, content: bytes) -> List[ChallengeDefinition]:
    document = decode_asset(key, content)
    records = _records(document, key)
    if not records:
        raise MalformedInput(f"{key}: no challenge definitions found")
    validator = _validator()
    errors: List[str] = []
    for index, record in enumerate(records):
        for error in sorted(validator.iter_errors(record), key=lambda e: [str(p) for p in e.path]):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            errors.append(f"[{index}] {path}: {error.message}")
    if errors:
        raise MalformedInput(f"{key}: " + "; ".join(errors[:10]))
    definitions = [
        ChallengeDefinition(name=record["name"].strip(), category=record["category"].strip(), payload=record)
        for record in records
    ]
    logger.debug("Parsed %s challenge definition(s) from %s", len(definitions), key)
    return definitions
