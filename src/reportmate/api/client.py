"""
HTTP client for the ReportMate collection API.

``send`` never raises: every result, including transport errors, comes back
as a TransmissionOutcome. There are no retries here; a failed payload stays
cached for a later transmit-only run.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import requests

from ..models.config import ConfigurationSnapshot
from ..models.payload import ensure_json_object
from ..models.results import (
    TransmissionErrorKind,
    TransmissionFailure,
    TransmissionOutcome,
    TransmissionSuccess,
)

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
EVENTS_PATH = "/api/events"
USER_AGENT = "ReportMate-macOS"

SUCCESS_STATUSES = frozenset({"success", "ok"})


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _decode_strict(body: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Fields of the documented response schema, or None if the body does not match it."""
    success = body.get("success")
    records = body.get("recordsProcessed")
    message = body.get("message")
    timestamp = _parse_timestamp(body.get("timestamp"))
    if not isinstance(success, bool):
        return None
    if not isinstance(records, int) or isinstance(records, bool):
        return None
    if message is not None and not isinstance(message, str):
        return None
    if timestamp is None:
        return None
    return {"success": success, "records": records, "message": message, "timestamp": timestamp}


def _generic_success_signal(body: Mapping[str, Any]) -> bool:
    """First present success indicator: success flag, status string, ok flag; default True."""
    if isinstance(body.get("success"), bool):
        return body["success"]
    if isinstance(body.get("status"), str):
        return body["status"].strip().lower() in SUCCESS_STATUSES
    if isinstance(body.get("ok"), bool):
        return body["ok"]
    return True


def decode_response(status_code: int, text: str) -> TransmissionOutcome:
    """
    Interpret an HTTP response from the events endpoint.

    2xx bodies are tried against the documented schema, then as any JSON
    object carrying a success signal, then as plain text. Every 2xx is a
    TransmissionSuccess; a negative signal only clears ``server_success``.

    Args:
        status_code: HTTP status code
        text: Raw response body

    Returns:
        TransmissionSuccess or TransmissionFailure
    """
    if not 200 <= status_code < 300:
        return TransmissionFailure(
            kind=TransmissionErrorKind.HTTP,
            detail=f"HTTP {status_code}: {text[:200]}" if text else f"HTTP {status_code}",
            status_code=status_code,
            body=text,
        )

    try:
        body = json.loads(text) if text.strip() else None
    except ValueError:
        body = None

    if not isinstance(body, dict):
        logger.debug("Response body is not a JSON object, treating 2xx as success")
        return TransmissionSuccess(records_processed=1, message=text or None, status_code=status_code)

    strict = _decode_strict(body)
    if strict is not None:
        success, records, message = strict["success"], strict["records"], strict["message"]
        timestamp = strict["timestamp"]
    else:
        success = _generic_success_signal(body)
        records = body.get("recordsProcessed")
        if not isinstance(records, int) or isinstance(records, bool):
            records = 1
        message = next(
            (body[k] for k in ("message", "detail") if isinstance(body.get(k), str)),
            text,
        )
        timestamp = datetime.now(timezone.utc)

    if not success:
        logger.warning(f"Server answered HTTP {status_code} without a success signal: {message}")
    return TransmissionSuccess(records_processed=records, message=message, status_code=status_code,
                               server_success=success, timestamp=timestamp)


class TransmissionClient:
    """Health check and payload delivery for one configuration snapshot."""

    def __init__(self, snapshot: ConfigurationSnapshot, session: Optional[requests.Session] = None):
        """
        Args:
            snapshot: Supplies API URL, API key, TLS verification and timeout
            session: HTTP session, replaced by a fake in tests
        """
        self.api_url = snapshot.api_url.rstrip("/")
        self.api_key = snapshot.api_key
        self.verify = snapshot.validate_ssl
        self.timeout = snapshot.timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def __enter__(self) -> "TransmissionClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Both header names carry the same secret.
            headers["X-API-Key"] = self.api_key
            headers["X-Client-Passphrase"] = self.api_key
        return headers

    def check_health(self) -> bool:
        """True when ``GET {api_url}/health`` answers with 2xx."""
        if not self.api_url:
            logger.warning("Health check skipped: no API URL configured")
            return False
        url = f"{self.api_url}{HEALTH_PATH}"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout, verify=self.verify)
        except requests.RequestException as e:
            logger.warning(f"Health check failed for {url}: {type(e).__name__}: {e}")
            return False
        logger.debug(f"Health check {url} returned {response.status_code}")
        return 200 <= response.status_code < 300

    def send(self, payload: Mapping[str, Any]) -> TransmissionOutcome:
        """
        POST a payload to the events endpoint.

        Returns:
            TransmissionSuccess, or TransmissionFailure with kind
            CONFIGURATION, ENCODING, NETWORK or HTTP
        """
        if not self.api_url:
            return TransmissionFailure(kind=TransmissionErrorKind.CONFIGURATION,
                                       detail="API URL not configured")
        try:
            body = json.dumps(ensure_json_object(dict(payload)), allow_nan=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode payload: {e}")
            return TransmissionFailure(kind=TransmissionErrorKind.ENCODING, detail=str(e), error=e)

        url = f"{self.api_url}{EVENTS_PATH}"
        logger.info(f"Sending {len(body)} bytes to {url}")
        try:
            response = self.session.post(
                url,
                data=body.encode("utf-8"),
                headers=self._headers(),
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as e:
            logger.error(f"Transmission to {url} failed: {type(e).__name__}: {e}")
            return TransmissionFailure(kind=TransmissionErrorKind.NETWORK,
                                       detail=f"{type(e).__name__}: {e}", error=e)

        outcome = decode_response(response.status_code, response.text)
        if outcome.ok:
            logger.info(f"Transmission accepted: {outcome.records_processed} records")
        else:
            logger.error(f"Transmission failed: {outcome.detail}")
        return outcome
