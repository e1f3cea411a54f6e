"""Replicate-compatible predictions client.

Single-shot calls only: ``submit`` starts a job and ``poll`` reads its state
once. Deciding when to ask again belongs to the caller.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from heroframe.config import InferenceConfig
from heroframe.errors import (
    AuthenticationError,
    RateLimited,
    TransientNetworkError,
    UpstreamProtocolError,
)
from heroframe.schemas import JobHandle, JobSnapshot

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "starting": "starting",
    "processing": "processing",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "failed",
    "cancelled": "failed",
}


def build_http_client(config: InferenceConfig) -> httpx.Client:
    timeout = httpx.Timeout(config.timeout, connect=10.0)
    return httpx.Client(timeout=timeout)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for key in ("detail", "error", "title"):
            if payload.get(key):
                return str(payload[key])
    return response.reason_phrase or f"HTTP {response.status_code}"


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _first_output_url(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output.strip() or None
    if isinstance(output, (list, tuple)):
        for item in output:
            if isinstance(item, str) and item.strip():
                return item.strip()
    return None


class JobClient:
    def __init__(self, http: httpx.Client, config: InferenceConfig) -> None:
        self.http = http
        self.config = config

    def _headers(self) -> dict[str, str]:
        if not self.config.api_token:
            raise AuthenticationError("REPLICATE_API_TOKEN is not configured")
        return {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._headers()
        try:
            response = self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"Inference request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Inference request failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Inference provider rejected credentials: {_error_detail(response)}"
            )
        if status == 429:
            raise RateLimited(
                f"Inference provider rate limited: {_error_detail(response)}",
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise TransientNetworkError(
                f"Inference provider error {status}: {_error_detail(response)}",
                details={"status_code": status},
            )
        if status >= 400:
            raise UpstreamProtocolError(
                f"Inference request rejected ({status}): {_error_detail(response)}",
                details={"status_code": status},
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamProtocolError("Inference provider returned non-JSON body") from exc
        if not isinstance(payload, dict):
            raise UpstreamProtocolError("Inference provider returned unexpected payload")
        return payload

    @staticmethod
    def _parse_status(payload: dict[str, Any]) -> str:
        raw = str(payload.get("status") or "").strip().lower()
        status = _STATUS_MAP.get(raw)
        if status is None:
            raise UpstreamProtocolError(f"Unknown job status: {raw or '<missing>'}")
        return status

    @staticmethod
    def _parse_id(payload: dict[str, Any]) -> str:
        job_id = str(payload.get("id") or "").strip()
        if not job_id:
            raise UpstreamProtocolError("Inference response missing job id")
        return job_id

    def submit(self, source_image_url: str, prompt: str) -> JobHandle:
        url = f"{self.config.api_base}/models/{self.config.model}/predictions"
        body = {
            "input": {
                "input_image": source_image_url,
                "prompt": prompt,
                "output_format": self.config.output_format,
            }
        }
        payload = self._request("POST", url, json=body)
        handle = JobHandle(job_id=self._parse_id(payload), status=self._parse_status(payload))
        logger.info(
            "job.submitted",
            extra={"job_id": handle.job_id, "status": handle.status, "source_url": source_image_url},
        )
        return handle

    def poll(self, job_id: str) -> JobSnapshot:
        if not job_id:
            raise ValueError("job_id is required")
        payload = self._request("GET", f"{self.config.api_base}/predictions/{job_id}")
        raw_status = str(payload.get("status") or "").lower()
        status = self._parse_status(payload)
        error = payload.get("error")
        if status == "failed" and not error and raw_status in {"canceled", "cancelled"}:
            error = "Generation was canceled"
        snapshot = JobSnapshot(
            job_id=str(payload.get("id") or job_id),
            status=status,
            output_url=_first_output_url(payload.get("output")),
            error=str(error) if error else None,
        )
        logger.debug("job.polled", extra={"job_id": job_id, "status": snapshot.status})
        return snapshot


__all__ = ["JobClient", "build_http_client"]
