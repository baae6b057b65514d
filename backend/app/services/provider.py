from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib import parse, request
from urllib.error import HTTPError, URLError

from pydantic import ValidationError

from backend.app.models import BatchSnapshot, CampaignLaunchRequest, LaunchRecipient

logger = logging.getLogger("campaign_minutes.provider")


class ProviderConfigError(Exception):
    pass


class ProviderIOError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _recipient_payload(recipient: LaunchRecipient) -> dict[str, Any]:
    payload: dict[str, Any] = {"phone_number": recipient.phone_number}
    if recipient.dynamic_variables:
        payload["conversation_initiation_client_data"] = {
            "dynamic_variables": recipient.dynamic_variables
        }
    return payload


class ProviderClient:
    """Blocking client for the voice provider's batch-calling API."""

    def __init__(self, *, api_key: str, base_url: str, timeout_seconds: int = 15) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _request(
        self, method: str, path: str, payload: Optional[dict[str, Any]] = None
    ) -> bytes:
        if not self.api_key:
            raise ProviderConfigError("provider api key is not configured")
        headers = {"xi-api-key": self.api_key}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(
            f"{self.base_url}{path}",
            data=data,
            method=method,
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                return response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:500]
            logger.warning(
                "provider_http_error method=%s path=%s status=%s detail=%s",
                method,
                path,
                exc.code,
                detail,
            )
            raise ProviderIOError(
                f"provider returned {exc.code} for {method} {path}", status_code=exc.code
            ) from exc
        except (URLError, TimeoutError) as exc:
            raise ProviderIOError(f"provider request failed for {method} {path}") from exc

    def _request_json(
        self, method: str, path: str, payload: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        body = self._request(method, path, payload)
        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProviderIOError(f"provider response for {path} was not valid json") from exc
        if not isinstance(decoded, dict):
            raise ProviderIOError(f"provider response for {path} was not an object")
        return decoded

    def submit_batch(self, launch: CampaignLaunchRequest, *, call_name: str) -> dict[str, Any]:
        payload = {
            "call_name": call_name,
            "agent_id": launch.agent_id,
            "agent_phone_number_id": launch.phone_number_id,
            "scheduled_time_unix": launch.scheduled_time_unix,
            "recipients": [_recipient_payload(recipient) for recipient in launch.recipients],
        }
        result = self._request_json("POST", "/batch-calling/submit", payload)
        if not result.get("id"):
            raise ProviderIOError("provider did not return a batch id")
        return result

    def get_batch(self, batch_id: str) -> BatchSnapshot:
        result = self._request_json("GET", f"/batch-calling/{parse.quote(batch_id, safe='')}")
        result.setdefault("id", batch_id)
        try:
            return BatchSnapshot.model_validate(result)
        except ValidationError as exc:
            raise ProviderIOError(f"unexpected batch payload for {batch_id}") from exc

    def get_conversation_audio(self, conversation_id: str) -> bytes:
        return self._request(
            "GET", f"/conversations/{parse.quote(conversation_id, safe='')}/audio"
        )

    def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        return self._request_json(
            "POST", f"/batch-calling/{parse.quote(batch_id, safe='')}/cancel", {}
        )
