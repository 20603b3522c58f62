from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import ApiError
from ..util import json as jsonutil

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HttpConfig:
    base_url: str
    timeout_s: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


def _error_message(body: bytes, fallback: str) -> str:
    with contextlib.suppress(ValueError):
        parsed = jsonutil.loads(body.decode("utf-8"))
        if isinstance(parsed, dict):
            msg = parsed.get("error") or parsed.get("message")
            if isinstance(msg, str) and msg:
                return msg
    return fallback


class HttpTransport:
    """
    Blocking JSON-over-HTTP requests executed in a worker thread.

    The bearer token is attached to every request while set. Failures of any kind
    surface as `ApiError` whose `message` is the server's `error` field if present.
    """

    def __init__(self, cfg: HttpConfig) -> None:
        self.cfg = cfg
        self.token: str | None = None

    def _url(self, path: str, params: dict[str, Any] | None) -> str:
        url = self.cfg.base_url.rstrip("/") + "/" + path.lstrip("/")
        if params:
            url += "?" + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        return url

    def _request_blocking(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "pyonionchat/0.1",
            **self.cfg.headers,
        }
        data: bytes | None = None
        if body is not None:
            data = jsonutil.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        req = urllib.request.Request(
            self._url(path, params), data=data, headers=headers, method=method
        )
        try:
            with urllib.request.urlopen(req, timeout=self.cfg.timeout_s) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            err_body = b""
            with contextlib.suppress(Exception):
                err_body = e.read()
            raise ApiError(
                _error_message(err_body, f"request failed with status {e.code}"), status=e.code
            ) from e
        except Exception as e:
            raise ApiError(f"request failed: {e}") from e

        if not raw:
            return {}
        try:
            parsed = jsonutil.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ApiError("server returned invalid JSON") from e
        if not isinstance(parsed, dict):
            raise ApiError("server returned an unexpected response shape")
        return parsed

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        logger.debug("%s %s", method, path)
        return await asyncio.to_thread(self._request_blocking, method, path, body, params)
