"""Service registry and downstream dispatch strategies."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional

import httpx

from .errors import DownstreamError, Timeout, UnknownService
from .pricing import price_to_millisats
from .sanitize import sanitize

logger = logging.getLogger(__name__)

STRATEGY_SYNC = "sync"
STRATEGY_POLL = "poll"
PROCESSING = "processing"

Dispatch = Callable[[Any], Awaitable[Any]]

GPT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "model": {"type": "string"},
        "messages": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "role": {"type": "string"},
                    "content": {"type": "string"},
                },
            },
        },
        "max_tokens": {"type": "number"},
        "temperature": {"type": "number"},
        "top_p": {"type": "number"},
        "n": {"type": "number"},
        "stop": {"type": "string"},
        "presence_penalty": {"type": "number"},
        "frequency_penalty": {"type": "number"},
    },
}

GPT_RESULT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "object": {"type": "string"},
        "created": {"type": "number"},
        "model": {"type": "string"},
        "choices": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "index": {"type": "number"},
                    "message": {
                        "type": "object",
                        "properties": {
                            "role": {"type": "string"},
                            "content": {"type": "string"},
                        },
                    },
                    "finish_reason": {"type": "string"},
                },
            },
        },
        "usage": {
            "type": "object",
            "properties": {
                "prompt_tokens": {"type": "number"},
                "completion_tokens": {"type": "number"},
                "total_tokens": {"type": "number"},
            },
        },
    },
}

STABLE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "prompt": {"type": "string"},
        "negative_prompt": {"type": "string"},
        "width": {"type": "string"},
        "height": {"type": "string"},
        "samples": {"type": "string"},
        "num_inference_steps": {"type": "string"},
        "guidance_scale": {"type": "number"},
        "seed": {"type": "number"},
    },
}

STABLE_RESULT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "status": {"type": "string"},
        "id": {"type": "number"},
        "output": {"type": "array", "items": {"type": "string"}},
        "generationTime": {"type": "number"},
    },
}


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def _post_json(
    url: str,
    payload: Any,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Any:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise DownstreamError(f"Request to {url} failed: {exc}") from exc
    body = _response_payload(response)
    if response.is_error:
        raise DownstreamError(
            f"Provider returned HTTP {response.status_code}",
            payload=body,
            status_code=response.status_code,
        )
    return body


class SyncDispatcher:
    """One POST to the provider; its JSON body is the result."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._transport = transport

    async def __call__(self, payload: Any) -> Any:
        return await _post_json(
            self.url,
            payload,
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport,
        )


class PollingDispatcher:
    """Submit a job, then poll the fetch endpoint while it reports ``processing``.

    Polling stops with :class:`Timeout` once another sleep would cross
    ``deadline_seconds`` measured from submission.
    """

    def __init__(
        self,
        submit_url: str,
        fetch_url: str,
        *,
        api_key: Optional[str] = None,
        interval_seconds: float = 3.0,
        deadline_seconds: float = 600.0,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.submit_url = submit_url
        self.fetch_url = fetch_url
        self.api_key = api_key
        self.interval_seconds = interval_seconds
        self.deadline_seconds = deadline_seconds
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    async def _post(self, url: str, payload: Dict[str, Any]) -> Any:
        body = await _post_json(url, payload, timeout=self.timeout, transport=self._transport)
        if not isinstance(body, dict):
            raise DownstreamError("Provider returned a non-object response", payload=body)
        if str(body.get("status", "")).lower() in ("error", "failed"):
            raise DownstreamError(str(body.get("message") or "Provider reported an error"), payload=body)
        return body

    def _with_key(self, payload: Any) -> Dict[str, Any]:
        body = dict(payload) if isinstance(payload, dict) else {}
        if self.api_key:
            body["key"] = self.api_key
        return body

    async def __call__(self, payload: Any) -> Any:
        started = self._clock()
        body = await self._post(self.submit_url, self._with_key(payload))
        polls = 0
        while body.get("status") == PROCESSING:
            if self._clock() - started + self.interval_seconds > self.deadline_seconds:
                logger.warning(
                    "Provider job %s still processing after %s polls; giving up",
                    body.get("id"),
                    polls,
                )
                raise Timeout(f"Provider job still processing after {self.deadline_seconds:g}s")
            await self._sleep(self.interval_seconds)
            polls += 1
            logger.debug("Polling provider job %s (attempt %s)", body.get("id"), polls)
            body = await self._post(self.fetch_url, self._with_key({"request_id": body.get("id")}))
        return body


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    price_usd: Decimal
    input_schema: Dict[str, Any]
    dispatch: Dispatch
    strategy: str = STRATEGY_SYNC
    result_schema: Dict[str, Any] = field(default_factory=dict)
    upstream_url: str = ""
    description: str = ""

    def price_msats(self, btc_usd_rate: Any, margin_pct: Any) -> int:
        return price_to_millisats(self.price_usd, btc_usd_rate, margin_pct)

    async def run(self, request_data: Any) -> Any:
        return await self.dispatch(sanitize(request_data, self.input_schema))


class ServiceRegistry:
    def __init__(self, services: Iterable[ServiceSpec]) -> None:
        self._services: Dict[str, ServiceSpec] = {}
        for spec in services:
            if spec.name in self._services:
                raise ValueError(f"Duplicate service {spec.name}")
            self._services[spec.name] = spec

    def resolve(self, name: str) -> ServiceSpec:
        spec = self._services.get(name)
        if spec is None:
            raise UnknownService(name)
        return spec

    def names(self) -> List[str]:
        return list(self._services)

    def __iter__(self) -> Iterator[ServiceSpec]:
        return iter(self._services.values())


def build_registry(settings: Any, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> ServiceRegistry:
    timeout = float(getattr(settings, "http_timeout_seconds", 60.0))
    gpt = ServiceSpec(
        name="GPT",
        price_usd=Decimal(str(settings.gpt_usd)),
        input_schema=GPT_SCHEMA,
        result_schema=GPT_RESULT_SCHEMA,
        strategy=STRATEGY_SYNC,
        upstream_url=settings.openai_url,
        description="Get your GPT needs here!",
        dispatch=SyncDispatcher(
            settings.openai_url,
            headers={"Authorization": f"Bearer {settings.chat_gpt_api_key or ''}"},
            timeout=timeout,
            transport=transport,
        ),
    )
    stable = ServiceSpec(
        name="STABLE",
        price_usd=Decimal(str(settings.stable_usd)),
        input_schema=STABLE_SCHEMA,
        result_schema=STABLE_RESULT_SCHEMA,
        strategy=STRATEGY_POLL,
        upstream_url=settings.stable_diffusion_url,
        description="Stable Diffusion text-to-image",
        dispatch=PollingDispatcher(
            settings.stable_diffusion_url,
            settings.stable_diffusion_fetch_url,
            api_key=settings.stable_diffusion_api_key,
            interval_seconds=float(settings.poll_interval_seconds),
            deadline_seconds=float(settings.poll_deadline_seconds),
            timeout=timeout,
            transport=transport,
        ),
    )
    return ServiceRegistry([gpt, stable])


__all__ = [
    "GPT_RESULT_SCHEMA",
    "GPT_SCHEMA",
    "PollingDispatcher",
    "STABLE_RESULT_SCHEMA",
    "STABLE_SCHEMA",
    "STRATEGY_POLL",
    "STRATEGY_SYNC",
    "ServiceRegistry",
    "ServiceSpec",
    "SyncDispatcher",
    "build_registry",
]
