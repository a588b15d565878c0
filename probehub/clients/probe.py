from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import ValidationError

from probehub.core.errors import DeviceError, TransportError
from probehub.models.sensor import Device, FetchOutcome
from probehub.schemas.probe import SensorDataResponse

logger = logging.getLogger(__name__)

SENSORS_PATH = "/api/sensors"
INFO_PATH = "/api/info"
DEFAULT_DEVICE_ERROR = "Failed to fetch sensor data"


class ProbeClient:
    """Single-attempt HTTP reads against probe firmware.

    ``fetch`` never raises for network or payload problems; it classifies
    them into a :class:`FetchOutcome`. Retrying is left to the caller.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._timeout_seconds = float(timeout_seconds)
        self._client = httpx.Client(
            timeout=timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def fetch(self, device: Device) -> FetchOutcome:
        url = device.base_url + SENSORS_PATH
        deadline = time.monotonic() + self._timeout_seconds
        try:
            with self._client.stream("GET", url) as resp:
                body = _read_before(resp, deadline)
        except httpx.TimeoutException as e:
            return self._transport_failure(device, f"Timed out polling {url}", e)
        except httpx.HTTPError as e:
            return self._transport_failure(device, f"Could not reach {url}: {e}", e)
        if body is None:
            return self._transport_failure(
                device,
                f"Timed out polling {url}",
                TimeoutError(f"response not complete within {self._timeout_seconds}s"),
            )

        received_at = datetime.now(tz=timezone.utc)
        try:
            envelope = SensorDataResponse.model_validate_json(body)
        except ValidationError as e:
            return self._transport_failure(
                device, f"Malformed response from {url} (HTTP {resp.status_code})", e
            )

        if envelope.success and not resp.is_success:
            # Only a device that answers 2xx can report a reading.
            return self._transport_failure(
                device,
                f"HTTP {resp.status_code} from {url}",
                httpx.HTTPStatusError(
                    f"HTTP {resp.status_code}", request=resp.request, response=resp
                ),
            )

        if not envelope.success or envelope.data is None:
            message = envelope.error or DEFAULT_DEVICE_ERROR
            logger.info("Device %s reported failure: %s", device.id, message)
            return FetchOutcome(
                device_id=device.id, error=DeviceError(message), received_at=received_at
            )

        reading = envelope.data.to_reading(
            device_id=device.id,
            fallback_timestamp=envelope.timestamp or received_at,
        )
        return FetchOutcome(device_id=device.id, reading=reading, received_at=received_at)

    def get_info(self, device: Device) -> dict[str, Any]:
        url = device.base_url + INFO_PATH
        deadline = time.monotonic() + self._timeout_seconds
        try:
            with self._client.stream("GET", url) as resp:
                resp.raise_for_status()
                body = _read_before(resp, deadline)
        except httpx.HTTPError as e:
            raise TransportError(f"Could not fetch device info from {url}", cause=e) from e
        if body is None:
            raise TransportError(f"Timed out fetching device info from {url}")
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise TransportError(f"Malformed device info from {url}", cause=e) from e
        if not isinstance(payload, dict):
            return {"info": payload}
        return payload

    @staticmethod
    def _transport_failure(device: Device, message: str, cause: BaseException) -> FetchOutcome:
        logger.info("Device %s unreachable: %s", device.id, message)
        return FetchOutcome.failure(device.id, TransportError(message, cause=cause))


def _read_before(resp: httpx.Response, deadline: float) -> bytes | None:
    """Read the whole body, or return ``None`` once ``deadline`` has passed.

    httpx timeouts apply to each network operation, so a body trickled in
    small chunks would otherwise never time out.
    """
    chunks: list[bytes] = []
    for chunk in resp.iter_bytes():
        if time.monotonic() > deadline:
            return None
        chunks.append(chunk)
    return b"".join(chunks)
