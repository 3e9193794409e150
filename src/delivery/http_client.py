import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Callable, Optional

import requests


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: bytes
    headers: Mapping[str, str]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpError(Exception):
    pass


Transport = Callable[[str, str, Mapping[str, str], bytes, float], HttpResponse]


def requests_transport(
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: bytes,
    timeout_seconds: float,
) -> HttpResponse:
    response = requests.request(
        method,
        url,
        headers=dict(headers),
        data=body,
        timeout=timeout_seconds,
        allow_redirects=False,
    )
    return HttpResponse(
        status_code=response.status_code,
        body=response.content[:4096],
        headers=dict(response.headers.items()),
    )


class WebhookHttpClient:
    def __init__(
        self,
        secret: str,
        transport: Transport = requests_transport,
        timeout_seconds: float = 10.0,
        user_agent: str = "chain-mirror-dispatcher/0.1",
    ) -> None:
        if not secret:
            raise ValueError("webhook secret is required")
        self._secret = secret
        self._transport = transport
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent

    def build_headers(self, extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._secret}",
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
        }
        headers.update(extra or {})
        return headers

    def post_json(
        self,
        url: str,
        body: Mapping[str, object],
        headers: Optional[Mapping[str, str]] = None,
    ) -> HttpResponse:
        encoded = json.dumps(body, sort_keys=True, default=str).encode("utf-8")
        try:
            return self._transport(
                "POST", url, self.build_headers(headers), encoded, self._timeout_seconds
            )
        except requests.Timeout as error:
            raise HttpError(f"timeout after {self._timeout_seconds:g}s") from error
        except Exception as error:
            raise HttpError(str(error) or type(error).__name__) from error
