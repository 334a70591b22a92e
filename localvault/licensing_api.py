"""
Client for the external licensing server.

Only activation and transfer go over the network. Routine entitlement
checks never call this module.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from localvault.config import HTTP_RETRIES, HTTP_TIMEOUT_SECONDS, LICENSE_SERVER_URL
from localvault.errors import NetworkError

ACTIVATE_PATH = "/api/lpv/license/activate"
TRANSFER_PATH = "/api/lpv/license/transfer"
TRIAL_ACTIVATE_PATH = "/api/lpv/trial/activate"

# Response keys the server has used for the signed record over time
_RECORD_KEYS = ("license_file", "signed_record", "trial_file")


@dataclass
class ActivationResponse:
    status: str
    plan_type: Optional[str] = None
    signed_record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    transfer_count: Optional[int] = None
    mode: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any) -> "ActivationResponse":
        if not isinstance(data, dict) or not isinstance(data.get("status"), str):
            raise NetworkError("Licensing server returned an unexpected response")
        record = next(
            (data[k] for k in _RECORD_KEYS if isinstance(data.get(k), dict)), None
        )
        transfer_count = data.get("transfer_count")
        return cls(
            status=data["status"],
            plan_type=data.get("plan_type"),
            signed_record=record,
            error=data.get("error"),
            transfer_count=transfer_count if isinstance(transfer_count, int) else None,
            mode=data.get("mode"),
        )


@dataclass
class ActivationResult:
    """Outcome of an activation or transfer, as reported to the caller."""
    success: bool
    error: Optional[str] = None
    requires_transfer: bool = False
    status: Optional[str] = None
    plan_type: Optional[str] = None
    transfer_count: Optional[int] = None


class LicensingAPI:
    """Interface consumed by the license and trial services."""

    def activate(self, license_key: str, device_id: str) -> ActivationResponse:
        raise NotImplementedError

    def transfer(self, license_key: str, device_id: str) -> ActivationResponse:
        raise NotImplementedError

    def activate_trial(self, trial_key: str, device_id: str) -> ActivationResponse:
        raise NotImplementedError


class HttpLicensingAPI(LicensingAPI):
    """
    httpx-based licensing client.

    Transport failures and 5xx answers are retried with exponential backoff
    (``backoff``, ``2 * backoff``, ...). Anything that is still not a 2xx
    afterwards becomes a NetworkError carrying the status code.
    """

    def __init__(
            self,
            base_url: str = LICENSE_SERVER_URL,
            timeout: float = HTTP_TIMEOUT_SECONDS,
            retries: int = HTTP_RETRIES,
            backoff: float = 1.0,
            client: Optional[httpx.Client] = None,
            sleep: Callable[[float], None] = time.sleep
    ):
        if retries < 0:
            raise ValueError("retries must be non-negative")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @staticmethod
    def _server_message(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            message = body.get("error") or body.get("message")
            return str(message) if message else None
        return None

    def _post(self, path: str, payload: Dict[str, Any]) -> ActivationResponse:
        last_error: Optional[NetworkError] = None

        for attempt in range(self.retries + 1):
            if attempt:
                self._sleep(self.backoff * (2 ** (attempt - 1)))
            try:
                response = self._client.post(path, json=payload, timeout=self.timeout)
            except httpx.TimeoutException as e:
                last_error = NetworkError("Connection to the licensing server timed out")
                last_error.__cause__ = e
                continue
            except httpx.HTTPError as e:
                last_error = NetworkError(f"Unable to reach the licensing server: {e}")
                last_error.__cause__ = e
                continue

            if response.is_success:
                try:
                    return ActivationResponse.from_json(response.json())
                except ValueError as e:
                    raise NetworkError(
                        "Licensing server returned invalid JSON", response.status_code
                    ) from e

            message = self._server_message(response) or (
                f"Licensing server error (HTTP {response.status_code})"
            )
            last_error = NetworkError(message, response.status_code)
            if response.status_code < 500:
                # Client errors will not improve on retry
                break

        raise last_error

    def activate(self, license_key: str, device_id: str) -> ActivationResponse:
        return self._post(ACTIVATE_PATH, {"license_key": license_key, "device_id": device_id})

    def transfer(self, license_key: str, device_id: str) -> ActivationResponse:
        return self._post(TRANSFER_PATH, {"license_key": license_key, "new_device_id": device_id})

    def activate_trial(self, trial_key: str, device_id: str) -> ActivationResponse:
        return self._post(TRIAL_ACTIVATE_PATH, {"trial_key": trial_key, "device_id": device_id})
