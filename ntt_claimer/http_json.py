from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


class HttpStatusError(RuntimeError):
    def __init__(self, status: int, body: str, method: str, url: str, reason: str = "") -> None:
        super().__init__(f"http_error status={status} method={method} url={url} body={body[:400]}")
        self.status = int(status)
        self.body = body
        self.method = method
        self.url = url
        self.reason = reason


class JsonHttpClient:
    """Small keep-alive JSON client over one aiohttp session.

    Transport errors and 5xx answers are retried once; anything else is
    raised to the caller.
    """

    def __init__(self, timeout_seconds: float, user_agent: str) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None
        self._get_headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": user_agent,
        }
        self._post_headers: Dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        }

    def _connect(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text:
            return None
        return json.loads(text)

    async def _request(self, method: str, url: str, headers: Dict[str, str], body: Optional[bytes]) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(2):
            try:
                session = self._connect()
                async with session.request(method, url, data=body, headers=headers) as resp:
                    if resp.status >= 400:
                        text = await resp.text(errors="replace")
                        raise HttpStatusError(
                            status=resp.status,
                            body=text,
                            method=method,
                            url=url,
                            reason=str(resp.reason or ""),
                        )
                    return await self._read_json(resp)
            except HttpStatusError as exc:
                if exc.status >= 500 and attempt < 1:
                    last_error = exc
                    continue
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                await self.close()
                last_error = exc
                continue
        if last_error is not None:
            raise last_error
        raise RuntimeError(f"{method.lower()}_json_failed_after_retry")

    async def get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        req_headers = {**self._get_headers, **headers} if headers else self._get_headers
        return await self._request("GET", url, req_headers, None)

    async def post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        req_headers = {**self._post_headers, **headers} if headers else self._post_headers
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        return await self._request("POST", url, req_headers, body)

    async def close(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            if not session.closed:
                await session.close()
