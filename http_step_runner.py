# http_step_runner.py

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

import aiohttp

from run_control import race_cancel
from scenario_errors import HttpStepError, RunCancelledError
from scenario_logging import get_logger, mask_headers, preview
from scenario_models import RequestSnapshot, ResponseRecord, RetryConfig, StepHeader
from variable_resolver import stringify

logger = get_logger("http")

BODYLESS_METHODS = ('GET', 'DELETE', 'HEAD', 'OPTIONS')


# ---------------------------
# Request Helpers
# ---------------------------

def build_url(base_url: str, endpoint: str) -> str:
    """Joins base URL and endpoint with exactly one '/'. Absolute endpoints are used as-is."""
    endpoint = endpoint or ""
    if endpoint.startswith(('http://', 'https://')):
        return endpoint
    if not endpoint:
        return base_url
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def merge_headers(server_headers: Iterable[StepHeader], step_headers: Iterable[StepHeader]) -> Dict[str, str]:
    """Enabled, non-empty headers from the server then the step; the step wins (case-insensitive)."""
    merged: Dict[str, str] = {}
    for header in list(server_headers or []) + list(step_headers or []):
        key = (header.key or "").strip()
        if not header.enabled or not key:
            continue
        for existing in [k for k in merged if k.lower() == key.lower()]:
            del merged[existing]
        merged[key] = header.value
    return merged


def encode_query_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    if not params:
        return None
    return {str(k): stringify(v) for k, v in params.items() if v is not None}


@dataclass
class ResolvedRequest:
    """A request step after variable resolution."""
    method: str
    url: str
    headers: Dict[str, str]
    body: Any = None
    query_params: Optional[Dict[str, Any]] = None

    def snapshot(self) -> RequestSnapshot:
        return RequestSnapshot(
            method=self.method,
            url=self.url,
            headers=mask_headers(self.headers),
            body=self.body,
            queryParams=self.query_params,
        )


@dataclass
class HttpResult:
    response: Optional[ResponseRecord] = None
    error: Optional[HttpStepError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------
# Runner
# ---------------------------

class HttpStepRunner:
    """Executes one resolved request with timeout and flat-delay retry."""

    def __init__(self, session: aiohttp.ClientSession):
        self.session = session

    def _prepare_body(self, request: ResolvedRequest) -> Tuple[Optional[Any], Optional[bytes]]:
        """Returns (json_payload, data_payload); at most one is set."""
        body = request.body
        if body is None or request.method in BODYLESS_METHODS:
            if body is not None:
                logger.debug(f"{request.method} {request.url}: body ignored for {request.method} request.")
            return None, None
        content_type = next((v for k, v in request.headers.items() if k.lower() == 'content-type'), '').lower()
        if isinstance(body, (dict, list)):
            return body, None
        if isinstance(body, str):
            if 'application/json' in content_type:
                try:
                    return json.loads(body), None
                except json.JSONDecodeError:
                    logger.warning(f"{request.method} {request.url}: Content-Type is JSON, but body is not valid JSON. Sending as raw string data.")
            return None, body.encode('utf-8', errors='replace')
        return None, stringify(body).encode('utf-8', errors='replace')

    async def _read_body(self, resp: aiohttp.ClientResponse) -> Any:
        resp_content_type = resp.headers.get('Content-Type', '').lower()
        try:
            if 'application/json' in resp_content_type or resp_content_type.endswith('+json'):
                try:
                    return await resp.json(encoding='utf-8', content_type=None)
                except (json.JSONDecodeError, UnicodeDecodeError, aiohttp.ContentTypeError) as json_err:
                    logger.warning(f"Failed to decode JSON response ({resp.status}) despite Content-Type. Error: {json_err}. Reading as text.")
                    return await resp.text(encoding='utf-8', errors='replace')
            if resp_content_type.startswith('text/') or 'xml' in resp_content_type:
                return await resp.text(encoding='utf-8', errors='replace')
            raw_bytes = await resp.read()
            if not raw_bytes:
                return None
            limit = 100
            if len(raw_bytes) > limit:
                return f"[Body Binary Data - Type: {resp_content_type}, Size: {len(raw_bytes)} bytes, Starts: {raw_bytes[:limit]!r}...]"
            return f"[Body Binary Data - Type: {resp_content_type}, Size: {len(raw_bytes)} bytes, Data: {raw_bytes!r}]"
        except aiohttp.ClientPayloadError as payload_err:
            logger.error(f"Payload error reading response body ({resp.status}): {payload_err}")
            return f"Error reading response body: {payload_err}"

    async def _send(
        self,
        request: ResolvedRequest,
        json_payload: Any,
        data_payload: Optional[bytes],
        timeout: Optional[aiohttp.ClientTimeout],
    ) -> ResponseRecord:
        kwargs: Dict[str, Any] = {
            'headers': request.headers,
            'params': encode_query_params(request.query_params),
            'json': json_payload,
            'data': data_payload,
        }
        if timeout is not None:
            kwargs['timeout'] = timeout
        start = time.monotonic()
        async with self.session.request(request.method, request.url, **kwargs) as resp:
            body = await self._read_body(resp)
            duration_ms = (time.monotonic() - start) * 1000
            return ResponseRecord(
                status=resp.status,
                statusText=resp.reason or "",
                headers={k: v for k, v in resp.headers.items()},
                data=body,
                durationMs=round(duration_ms, 2),
            )

    async def execute(
        self,
        request: ResolvedRequest,
        retry_config: Optional[RetryConfig] = None,
        timeout_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        accept_status: Iterable[int] = (),
    ) -> HttpResult:
        """
        Sends the request, retrying on statuses in retry_config.retryOn, on
        transport errors and (when enabled) on timeouts. Returns the outcome
        of the last attempt. Cancellation is never retried.
        """
        retry = retry_config or RetryConfig()
        max_attempts = retry.maxRetries + 1
        accepted = set(accept_status or ())
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000) if timeout_ms else None
        json_payload, data_payload = self._prepare_body(request)

        if logger.isEnabledFor(logging.DEBUG):
            payload = json_payload if json_payload is not None else data_payload
            logger.debug(
                f"REQUEST {request.method} {request.url} params={request.query_params} "
                f"headers={mask_headers(request.headers)} payload={preview(payload)}"
            )

        last_response: Optional[ResponseRecord] = None
        error: Optional[HttpStepError] = None
        for attempt in range(1, max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                return HttpResult(response=last_response, error=HttpStepError("Request cancelled", kind='cancelled'), attempts=attempt - 1)
            retryable = False
            last_response = None
            try:
                response = await race_cancel(self._send(request, json_payload, data_payload, timeout), cancel_event, "Request cancelled")
            except RunCancelledError:
                logger.info(f"{request.method} {request.url}: cancelled during attempt {attempt}.")
                return HttpResult(response=last_response, error=HttpStepError("Request cancelled", kind='cancelled'), attempts=attempt)
            except asyncio.TimeoutError:
                error = HttpStepError(f"Request timed out after {timeout_ms} ms", kind='timeout')
                retryable = retry.retryOnTimeout
            except aiohttp.ClientError as client_err:
                error = HttpStepError(f"HTTP Client Error: {type(client_err).__name__}: {client_err}", kind='transport')
                retryable = True
            else:
                last_response = response
                log_level = logging.WARNING if response.status >= 400 else logging.INFO
                logger.log(log_level, f"{request.method} {request.url} -> {response.status} ({response.durationMs:.2f} ms, attempt {attempt}/{max_attempts})")
                if 200 <= response.status < 300 or response.status in accepted:
                    return HttpResult(response=response, attempts=attempt)
                error = HttpStepError(
                    f"HTTP {response.status} {response.statusText}".rstrip(),
                    kind='status',
                    status=response.status,
                )
                retryable = response.status in retry.retryOn

            if retryable and attempt < max_attempts:
                delay = retry.retryDelayMs / 1000
                logger.warning(f"{request.method} {request.url}: {error.message} on attempt {attempt}/{max_attempts}. Retrying in {delay:.2f}s...")
                try:
                    await race_cancel(asyncio.sleep(delay), cancel_event, "Request cancelled")
                except RunCancelledError:
                    return HttpResult(response=last_response, error=HttpStepError("Request cancelled", kind='cancelled'), attempts=attempt)
                continue

            logger.error(f"{request.method} {request.url}: {error.message} after {attempt} attempt(s).")
            return HttpResult(response=last_response, error=error, attempts=attempt)

        # Not reached: the loop always returns on the last attempt
        return HttpResult(response=last_response, error=error, attempts=max_attempts)
