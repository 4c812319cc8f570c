import json
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Set
from urllib.parse import urlparse

import httpx
import pytest

os.environ.setdefault("ENDPOINT", "http://gateway.test")
os.environ.setdefault("LN_ADDRESS", "gateway@pay.example")
os.environ.setdefault("JOBS_PATH", "/tmp/paygate-tests/jobs.json")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

LN_ADDRESS = "gateway@pay.example"
CALLBACK_URL = "https://pay.example/lnurlp/gateway/callback"


class FakeLightning:
    """LNURL-pay endpoint, invoice callback and LUD-21 verify URLs in one handler."""

    def __init__(self, min_sendable: int = 1000, max_sendable: int = 100_000_000_000) -> None:
        self.min_sendable = min_sendable
        self.max_sendable = max_sendable
        self.invoices: Dict[str, int] = {}
        self.settled: Set[str] = set()
        self.verify_calls: List[str] = []
        self.fail_verify = False

    def settle(self, payment_hash: str) -> None:
        self.settled.add(payment_hash)

    @staticmethod
    def decode(payment_request: str) -> str:
        return payment_request.split("fake", 1)[1]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/lnurlp/gateway":
            return httpx.Response(
                200,
                json={
                    "tag": "payRequest",
                    "callback": CALLBACK_URL,
                    "minSendable": self.min_sendable,
                    "maxSendable": self.max_sendable,
                    "metadata": json.dumps([["text/plain", "gateway"]]),
                },
            )
        if path == urlparse(CALLBACK_URL).path:
            amount = int(request.url.params["amount"])
            assert request.url.params["expiry"] == "3600"
            payment_hash = f"{len(self.invoices) + 1:064x}"
            self.invoices[payment_hash] = amount
            return httpx.Response(
                200,
                json={
                    "pr": f"lnbc{amount}nfake{payment_hash}",
                    "verify": f"https://pay.example/verify/{payment_hash}",
                    "routes": [],
                },
            )
        if path.startswith("/verify/"):
            payment_hash = path.rsplit("/", 1)[1]
            self.verify_calls.append(payment_hash)
            if self.fail_verify:
                raise httpx.ConnectError("verify endpoint down", request=request)
            if payment_hash not in self.invoices:
                return httpx.Response(404, json={"status": "ERROR", "reason": "Not found"})
            return httpx.Response(
                200,
                json={"status": "OK", "settled": payment_hash in self.settled, "preimage": None},
            )
        return httpx.Response(404, json={"status": "ERROR", "reason": f"unexpected {path}"})


class FakeRates:
    def __init__(self, rate: str = "100000") -> None:
        self.rate = Decimal(rate)
        self.calls = 0

    async def get_rate(self) -> Decimal:
        self.calls += 1
        return self.rate


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def lightning() -> FakeLightning:
    return FakeLightning()


@pytest.fixture()
def rates() -> FakeRates:
    return FakeRates()


OPENAI_URL = "https://openai.example/v1/chat/completions"
SD_SUBMIT_URL = "https://sd.example/api/v4/dreambooth"
SD_FETCH_URL = "https://sd.example/api/v4/dreambooth/fetch"


class FakeProviders:
    def __init__(self) -> None:
        self.gpt_calls: List[dict] = []
        self.gpt_status = 200
        self.gpt_body: dict = {
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello!"}}],
        }
        self.sd_calls: List[dict] = []
        self.sd_statuses = ["processing", "success"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        body = json.loads(request.content or b"{}")
        if url == OPENAI_URL:
            self.gpt_calls.append(body)
            return httpx.Response(self.gpt_status, json=self.gpt_body)
        if url in (SD_SUBMIT_URL, SD_FETCH_URL):
            self.sd_calls.append(body)
            status = self.sd_statuses[min(len(self.sd_calls) - 1, len(self.sd_statuses) - 1)]
            payload = {"status": status, "id": 7}
            if status == "success":
                payload["output"] = ["https://cdn.example/7.png"]
            return httpx.Response(200, json=payload)
        return httpx.Response(404, json={"error": f"unexpected {url}"})


@pytest.fixture()
def providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture()
def gateway(tmp_path, lightning, rates, providers):
    from types import SimpleNamespace

    from paygate.invoices import InvoiceIssuer
    from paygate.jobs import JobStore
    from paygate.lifecycle import JobController
    from paygate.lnurl import LnurlPayClient
    from paygate.services import build_registry
    from paygate.verifier import PaymentVerifier

    def route(request: httpx.Request) -> httpx.Response:
        if request.url.host == "pay.example":
            return lightning.handler(request)
        return providers.handler(request)

    transport = httpx.MockTransport(route)
    settings = SimpleNamespace(
        endpoint="http://gateway.test",
        gpt_usd=Decimal("0.01"),
        stable_usd=Decimal("0.05"),
        openai_url=OPENAI_URL,
        chat_gpt_api_key="sk-test",
        stable_diffusion_url=SD_SUBMIT_URL,
        stable_diffusion_fetch_url=SD_FETCH_URL,
        stable_diffusion_api_key="sd-key",
        poll_interval_seconds=0.01,
        poll_deadline_seconds=5.0,
        http_timeout_seconds=5.0,
    )
    store = JobStore(tmp_path / "jobs.json")
    registry = build_registry(settings, transport=transport)
    lnurl = LnurlPayClient(LN_ADDRESS, transport=transport)
    issuer = InvoiceIssuer(
        store,
        registry,
        rates,
        lnurl,
        endpoint=settings.endpoint,
        margin_pct=Decimal("0"),
        decoder=lightning.decode,
    )
    controller = JobController(store, registry, issuer, PaymentVerifier(store, lnurl))
    return SimpleNamespace(
        controller=controller,
        store=store,
        issuer=issuer,
        settings=settings,
        lightning=lightning,
        providers=providers,
        rates=rates,
    )
