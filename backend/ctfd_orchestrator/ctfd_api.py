import json
import logging
from typing import Any, Dict, Optional

import requests

from .errors import ApiError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
_DUPLICATE_MARKERS = ("already exists", "duplicate", "unique constraint", "integrityerror")


def _response_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "")[:500]
    if isinstance(payload, dict):
        if payload.get("errors"):
            return json.dumps(payload.get("errors"), sort_keys=True)[:500]
        if payload.get("message"):
            return str(payload.get("message"))[:500]
    return json.dumps(payload, sort_keys=True)[:500]


def _is_duplicate(status_code: int, message: str) -> bool:
    if status_code == 409:
        return True
    if status_code in {400, 500}:
        lowered = message.lower()
        return any(marker in lowered for marker in _DUPLICATE_MARKERS)
    return False


def extract_token_value(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for candidate in (data.get("value"), data.get("token"), payload.get("token"), payload.get("value")):
        value = str(candidate or "").strip()
        if value:
            return value
    return None


class CTFdClient:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers.update({"Authorization": f"Token {token}"})
        self.session.headers.setdefault("Content-Type", "application/json")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def probe(self, timeout: Optional[float] = None) -> bool:
        try:
            response = self.session.get(self._url("/"), timeout=timeout or self.timeout)
        except requests.RequestException as exc:
            logger.debug("Health probe failed: %s", exc.__class__.__name__)
            return False
        return response.status_code < 400

    def create_token(self, email: str, password: str, name: str) -> Optional[str]:
        try:
            response = self.session.post(
                self._url(f"{API_PREFIX}/tokens"),
                json={"name": name},
                auth=(email, password),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Token request failed: %s", exc.__class__.__name__)
            return None
        if response.status_code >= 400:
            logger.warning("Token request rejected: HTTP %s %s", response.status_code, _response_message(response))
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Token response was not JSON.")
            return None
        return extract_token_value(payload)

    def _post(self, path: str, body: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        try:
            response = self.session.post(
                self._url(f"{API_PREFIX}{path}"),
                json=body,
                timeout=self.timeout if timeout is None else timeout,
            )
        except requests.RequestException as exc:
            raise ApiError(f"POST {path} failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            message = _response_message(response)
            raise ApiError(
                f"POST {path} returned HTTP {response.status_code}: {message}",
                status_code=response.status_code,
                duplicate=_is_duplicate(response.status_code, message),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(f"POST {path} returned a non-JSON body", status_code=response.status_code) from exc
        if isinstance(payload, dict) and payload.get("success") is False:
            message = _response_message(response)
            raise ApiError(
                f"POST {path} was not successful: {message}",
                status_code=response.status_code,
                duplicate=_is_duplicate(400, message),
            )
        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, dict) else {}

    def create_challenge(self, body: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._post("/challenges", body, timeout)

    def create_flag(self, challenge_id: int, flag: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._post("/flags", {"challenge_id": challenge_id, **flag}, timeout)

    def create_hint(self, challenge_id: int, hint: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._post("/hints", {"challenge_id": challenge_id, **hint}, timeout)

    def create_tag(self, challenge_id: int, tag: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._post("/tags", {"challenge_id": challenge_id, "value": tag}, timeout)
