from __future__ import annotations

import argparse
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

from .amounts import TOKEN_DECIMALS, to_raw
from .attestation import ATTESTATION_TIMEOUT_SECONDS, GUARDIAN_API, WORMHOLESCAN_API, normalize_emitter_address
from .errors import ClaimerError, ConfigError
from .redeem import CONFIRM_TIMEOUT_SECONDS
from .solana_ntt import WORMHOLE_CORE_PROGRAM_ID

DEFAULT_ENV_FILE = ".env"
COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")

_Argv = Optional[list[str]]
_UINT_RE = re.compile(r"[0-9]+")


def _strip_quotes(value: str) -> str:
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def parse_env_file(path: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    target = Path(path)
    if not target.is_file():
        return values
    for raw in target.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.lower().startswith("export "):
            line = line[7:].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        values[key] = _strip_quotes(value)
    return values


def load_env_file(path: str, *, override: bool = False) -> Dict[str, str]:
    """Copy ``KEY=value`` lines into ``os.environ``; real env vars win unless ``override``."""
    parsed = parse_env_file(path)
    for key, value in parsed.items():
        if override or key not in os.environ:
            os.environ[key] = value
    return parsed


def bootstrap_env_file(argv: _Argv) -> str:
    """Load env file early so parser defaults consistently come from env."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=os.environ.get("ENV_FILE", DEFAULT_ENV_FILE))
    pre_args, _ = pre.parse_known_args(argv)
    env_file = str(pre_args.env_file).strip() or DEFAULT_ENV_FILE
    load_env_file(env_file)
    return env_file


def _env(name: str, default: str = "") -> str:
    return str(os.environ.get(name, default) or default).strip()


def require_value(name: str, raw: Optional[str]) -> str:
    value = str(raw or "").strip()
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}")
    return value


def parse_positive_int(name: str, raw: str) -> int:
    text = str(raw).strip()
    if not _UINT_RE.fullmatch(text) or int(text) <= 0:
        raise ConfigError(f"{name} must be a positive integer, got: {raw}")
    return int(text)


def parse_unsigned_int(name: str, raw: str) -> int:
    text = str(raw).strip()
    if not _UINT_RE.fullmatch(text):
        raise ConfigError(f"{name} must be an unsigned integer, got: {raw}")
    return int(text)


def parse_positive_float(name: str, raw: str) -> float:
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{name} must be a positive number, got: {raw}") from None
    if not value > 0:
        raise ConfigError(f"{name} must be a positive number, got: {raw}")
    return value


def _require_http_url(name: str, raw: str) -> str:
    parsed = urlparse(raw)
    if parsed.scheme not in {"https", "http"} or not parsed.netloc:
        raise ConfigError(f"{name} must be an http(s) URL, got: {raw}")
    return raw.rstrip("/")


def _require_commitment(raw: str) -> str:
    value = str(raw).strip().lower()
    if value not in COMMITMENT_LEVELS:
        raise ConfigError(f"COMMITMENT must be one of {', '.join(COMMITMENT_LEVELS)}, got: {raw}")
    return value


@dataclass(frozen=True, slots=True)
class ClaimerConfig:
    env_file: str
    rpc_url: str
    private_key: str = field(repr=False)
    custody_address: str
    required_amount_display: str
    required_amount_raw: int
    ntt_program_id: str
    token_mint: str
    emitter_chain: int
    emitter_address: str
    sequence: int
    poll_interval_ms: int

    wormhole_core_program_id: str = WORMHOLE_CORE_PROGRAM_ID
    guardian_api_url: str = GUARDIAN_API
    wormholescan_api_url: str = WORMHOLESCAN_API
    attestation_timeout_seconds: float = ATTESTATION_TIMEOUT_SECONDS
    http_timeout_seconds: float = 15.0
    confirm_timeout_seconds: float = CONFIRM_TIMEOUT_SECONDS
    commitment: str = "confirmed"
    log_dir: str = "logs"
    log_level: str = "INFO"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


def parse_args(argv: _Argv = None) -> ClaimerConfig:
    env_file = bootstrap_env_file(argv)

    parser = argparse.ArgumentParser(
        description="NTT claimer: wait for custody balance, then redeem the inbound transfer on Solana"
    )
    parser.add_argument("--env-file", default=env_file, help=f"path to env file (default: {DEFAULT_ENV_FILE})")
    parser.add_argument("--rpc-url", default=_env("SOLANA_RPC_URL"))
    parser.add_argument("--private-key", default=_env("SOLANA_PRIVATE_KEY"), help="base58 keypair; prefer the env var")
    parser.add_argument("--custody-address", default=_env("CUSTODY_ADDRESS"))
    parser.add_argument("--required-amount", default=_env("REQUIRED_AMOUNT"), help="decimal token amount")
    parser.add_argument("--ntt-program-id", default=_env("NTT_PROGRAM_ID"))
    parser.add_argument("--token-mint", default=_env("TOKEN_MINT"))
    parser.add_argument("--emitter-chain", default=_env("EMITTER_CHAIN"), help="wormhole chain id of the source")
    parser.add_argument("--emitter-address", default=_env("EMITTER_ADDRESS"), help="20 or 32 byte hex")
    parser.add_argument("--sequence", default=_env("SEQUENCE"))
    parser.add_argument("--poll-interval-ms", default=_env("POLL_INTERVAL_MS"))
    parser.add_argument(
        "--wormhole-core-program-id",
        default=_env("WORMHOLE_CORE_PROGRAM_ID", WORMHOLE_CORE_PROGRAM_ID),
    )
    parser.add_argument("--guardian-api-url", default=_env("GUARDIAN_API_URL", GUARDIAN_API))
    parser.add_argument("--wormholescan-api-url", default=_env("WORMHOLESCAN_API_URL", WORMHOLESCAN_API))
    parser.add_argument(
        "--attestation-timeout-seconds",
        default=_env("ATTESTATION_TIMEOUT_SECONDS", str(ATTESTATION_TIMEOUT_SECONDS)),
    )
    parser.add_argument("--http-timeout-seconds", default=_env("HTTP_TIMEOUT_SECONDS", "15"))
    parser.add_argument(
        "--confirm-timeout-seconds",
        default=_env("CONFIRM_TIMEOUT_SECONDS", str(CONFIRM_TIMEOUT_SECONDS)),
    )
    parser.add_argument(
        "--commitment",
        choices=list(COMMITMENT_LEVELS),
        default=_env("COMMITMENT", "confirmed"),
    )
    parser.add_argument("--log-dir", default=_env("LOG_DIR", "logs"))
    parser.add_argument("--log-level", default=_env("LOG_LEVEL", "INFO"))

    args = parser.parse_args(argv)
    resolved_env_file = str(args.env_file).strip() or DEFAULT_ENV_FILE
    if resolved_env_file != env_file:
        load_env_file(resolved_env_file)
        env_file = resolved_env_file

    required_display = require_value("REQUIRED_AMOUNT", args.required_amount)
    try:
        required_raw = to_raw(required_display, TOKEN_DECIMALS)
    except ClaimerError as exc:
        raise ConfigError(f"REQUIRED_AMOUNT is invalid: {exc}") from exc

    emitter_address = require_value("EMITTER_ADDRESS", args.emitter_address)
    try:
        normalize_emitter_address(emitter_address)
    except ClaimerError as exc:
        raise ConfigError(str(exc)) from exc

    return ClaimerConfig(
        env_file=env_file,
        rpc_url=_require_http_url("SOLANA_RPC_URL", require_value("SOLANA_RPC_URL", args.rpc_url)),
        private_key=require_value("SOLANA_PRIVATE_KEY", args.private_key),
        custody_address=require_value("CUSTODY_ADDRESS", args.custody_address),
        required_amount_display=required_display,
        required_amount_raw=required_raw,
        ntt_program_id=require_value("NTT_PROGRAM_ID", args.ntt_program_id),
        token_mint=require_value("TOKEN_MINT", args.token_mint),
        emitter_chain=parse_positive_int("EMITTER_CHAIN", require_value("EMITTER_CHAIN", args.emitter_chain)),
        emitter_address=emitter_address,
        sequence=parse_unsigned_int("SEQUENCE", require_value("SEQUENCE", args.sequence)),
        poll_interval_ms=parse_positive_int(
            "POLL_INTERVAL_MS", require_value("POLL_INTERVAL_MS", args.poll_interval_ms)
        ),
        wormhole_core_program_id=str(args.wormhole_core_program_id).strip() or WORMHOLE_CORE_PROGRAM_ID,
        guardian_api_url=_require_http_url("GUARDIAN_API_URL", str(args.guardian_api_url).strip()),
        wormholescan_api_url=_require_http_url("WORMHOLESCAN_API_URL", str(args.wormholescan_api_url).strip()),
        attestation_timeout_seconds=parse_positive_float(
            "ATTESTATION_TIMEOUT_SECONDS", args.attestation_timeout_seconds
        ),
        http_timeout_seconds=parse_positive_float("HTTP_TIMEOUT_SECONDS", args.http_timeout_seconds),
        confirm_timeout_seconds=parse_positive_float("CONFIRM_TIMEOUT_SECONDS", args.confirm_timeout_seconds),
        commitment=_require_commitment(args.commitment),
        log_dir=str(args.log_dir).strip() or "logs",
        log_level=str(args.log_level).strip().upper() or "INFO",
    )
