from __future__ import annotations

from typing import Any

from webhook_delay.core.state_machine import QueueResult, SchedulerState, SchedulerStatus, to_iso


class ContractError(ValueError):
    pass


_STATUS_OPTIONAL_STRINGS = ("lastWebhookAt", "scheduledFor", "lastBuildAt", "lastError", "webhookUrl")
_BUILD_STATUSES = {"success", "error"}
_STATES = {state.value for state in SchedulerState}


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


def ack_payload(result: QueueResult, *, webhook_url: str | None = None) -> dict[str, Any]:
    return _drop_none(
        {
            "ok": True,
            "scheduledFor": to_iso(result.scheduled_for),
            "delaySeconds": int(round(result.delay_ms / 1000)),
            "webhookUrl": webhook_url or None,
        }
    )


def status_payload(status: SchedulerStatus) -> dict[str, Any]:
    return _drop_none(
        {
            "lastWebhookAt": status.last_webhook_at,
            "scheduledFor": status.scheduled_for,
            "lastBuildAt": status.last_build_at,
            "lastBuildStatus": status.last_build_status,
            "lastError": status.last_error,
            "retryCount": int(status.retry_count or 0),
            "delayMs": status.delay_ms,
            "webhookUrl": status.webhook_url,
            "state": status.state.value,
        }
    )


def error_payload(message: str) -> dict[str, Any]:
    return {"message": str(message)}


def validate_ack_payload(payload: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise ContractError("Acknowledgment payload must be a dict")
    if payload.get("ok") is not True:
        raise ContractError("Acknowledgment requires ok: true")
    if not isinstance(payload.get("scheduledFor"), str):
        raise ContractError("Acknowledgment requires string 'scheduledFor'")
    delay = payload.get("delaySeconds")
    if not isinstance(delay, int) or isinstance(delay, bool) or delay <= 0:
        raise ContractError("Acknowledgment requires positive int 'delaySeconds'")
    if "webhookUrl" in payload and not isinstance(payload["webhookUrl"], str):
        raise ContractError("webhookUrl must be a string when present")


def validate_status_payload(payload: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise ContractError("Status payload must be a dict")
    retry_count = payload.get("retryCount")
    if not isinstance(retry_count, int) or isinstance(retry_count, bool) or retry_count < 0:
        raise ContractError("Status requires non-negative int 'retryCount'")
    for name in _STATUS_OPTIONAL_STRINGS:
        if name in payload and not isinstance(payload[name], str):
            raise ContractError(f"{name} must be a string when present")
    if "lastBuildStatus" in payload and payload["lastBuildStatus"] not in _BUILD_STATUSES:
        raise ContractError("lastBuildStatus must be 'success' or 'error'")
    if "delayMs" in payload and not isinstance(payload["delayMs"], int):
        raise ContractError("delayMs must be an int when present")
    if payload.get("state") not in _STATES:
        raise ContractError("Status requires a known 'state'")
