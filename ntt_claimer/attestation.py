from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp

from .errors import (
    AttestationServiceError,
    EmptyAttestationPayload,
    InvalidEmitterAddress,
    MalformedAttestationResponse,
)
from .http_json import HttpStatusError, JsonHttpClient
from .models import MessageCoordinates
from .vaa import Attestation, decode_attestation, decode_transfer

log = logging.getLogger(__name__)

GUARDIAN_API = "https://api.wormholescan.io"
WORMHOLESCAN_API = "https://api.wormholescan.io"
ATTESTATION_TIMEOUT_SECONDS = 60.0
GUARDIAN_POLL_SECONDS = 2.0

_EMITTER_RE = re.compile(r"[0-9a-f]{40}|[0-9a-f]{64}")


def normalize_emitter_address(raw: str) -> str:
    """Return the 20-byte ``0x``-prefixed form of a 20- or 32-byte hex emitter."""
    clean = str(raw).strip().lower()
    if clean.startswith("0x"):
        clean = clean[2:]
    if not _EMITTER_RE.fullmatch(clean):
        raise InvalidEmitterAddress(f"emitter address must be 20-byte or 32-byte hex: {raw}")
    return "0x" + clean[-40:]


def to_universal_address(address: str) -> str:
    return normalize_emitter_address(address)[2:].rjust(64, "0")


class SignedVaaSource(Protocol):
    async def get_signed_vaa(
        self, chain_id: int, emitter: str, sequence: int, timeout_seconds: float
    ) -> Optional[bytes]:
        ...


class GuardianVaaSource:
    """Polls the guardian ``signed_vaa`` REST endpoint until the VAA shows up."""

    def __init__(
        self,
        http: JsonHttpClient,
        base_url: str = GUARDIAN_API,
        poll_seconds: float = GUARDIAN_POLL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.poll_seconds = max(0.1, float(poll_seconds))
        self._clock = clock
        self._sleep = sleep

    async def _query_once(self, url: str) -> Optional[bytes]:
        try:
            body = await self.http.get_json(url)
        except HttpStatusError as exc:
            if exc.status != 404:
                log.warning("guardian api returned status %d for %s", exc.status, url)
            return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning("guardian api request failed: %s", exc)
            return None
        encoded = body.get("vaaBytes") if isinstance(body, dict) else None
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded, validate=True) or None
        except (binascii.Error, ValueError):
            log.warning("guardian api returned undecodable vaaBytes for %s", url)
            return None

    async def get_signed_vaa(
        self, chain_id: int, emitter: str, sequence: int, timeout_seconds: float
    ) -> Optional[bytes]:
        url = f"{self.base_url}/v1/signed_vaa/{int(chain_id)}/{emitter}/{int(sequence)}"
        deadline = self._clock() + float(timeout_seconds)
        while True:
            vaa = await self._query_once(url)
            if vaa is not None:
                return vaa
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            await self._sleep(min(self.poll_seconds, remaining))


class AttestationFetcher:
    """Single-attempt VAA retrieval: guardian network first, Wormholescan second."""

    def __init__(
        self,
        primary: SignedVaaSource,
        http: JsonHttpClient,
        wormholescan_url: str = WORMHOLESCAN_API,
        timeout_seconds: float = ATTESTATION_TIMEOUT_SECONDS,
    ) -> None:
        self.primary = primary
        self.http = http
        self.wormholescan_url = wormholescan_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    async def fetch(self, coords: MessageCoordinates) -> Attestation:
        emitter = normalize_emitter_address(coords.emitter_address)
        log.info(
            "Fetching signed VAA from guardian network (chain=%d, emitter=%s, sequence=%d)",
            coords.chain_id,
            coords.emitter_address,
            coords.sequence,
        )

        vaa_bytes = await self.primary.get_signed_vaa(
            coords.chain_id,
            to_universal_address(emitter),
            coords.sequence,
            self.timeout_seconds,
        )
        if vaa_bytes:
            log.info("Fetched signed VAA from guardian network")
            return decode_transfer(vaa_bytes)

        url = f"{self.wormholescan_url}/api/v1/vaas/{coords.chain_id}/{coords.emitter_address}/{coords.sequence}"
        log.info("Guardian network did not return VAA within timeout, falling back to Wormholescan API: %s", url)
        raw = await self._fetch_fallback(url)
        attestation = decode_attestation(raw)
        log.info("Fetched and decoded signed VAA from Wormholescan API fallback (variant=%s)", attestation.variant)
        return attestation

    async def _fetch_fallback(self, url: str) -> bytes:
        try:
            body: Any = await self.http.get_json(url)
        except HttpStatusError as exc:
            raise AttestationServiceError(exc.status, exc.reason, url) from exc

        data = body.get("data") if isinstance(body, dict) else None
        encoded = data.get("vaa") if isinstance(data, dict) else None
        if not encoded or not isinstance(encoded, str):
            raise MalformedAttestationResponse("wormholescan api response missing data.vaa")

        try:
            raw = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as exc:
            raise MalformedAttestationResponse(f"wormholescan data.vaa is not base64: {exc}") from exc
        if not raw:
            raise EmptyAttestationPayload("decoded vaa bytes are empty")
        return raw
