from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from .errors import RpcError
from .http_json import JsonHttpClient
from .models import BalanceSnapshot

log = logging.getLogger(__name__)

_CONFIRMED = {"confirmed", "finalized"}


class SolanaRpcClient:
    """JSON-RPC calls the claimer needs, nothing more."""

    def __init__(self, http: JsonHttpClient, rpc_url: str, commitment: str = "confirmed") -> None:
        self.http = http
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        body = await self.http.post_json(self.rpc_url, payload)
        if not isinstance(body, dict):
            raise RpcError(method, None, "invalid_response")
        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(method, error.get("code"), str(error.get("message") or error))
            raise RpcError(method, None, str(error))
        return body.get("result")

    async def get_token_account_balance(self, address: str) -> BalanceSnapshot:
        result = await self.call("getTokenAccountBalance", [address, {"commitment": self.commitment}])
        value = (result or {}).get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict) or value.get("amount") is None:
            raise RpcError("getTokenAccountBalance", None, "missing_value")
        return BalanceSnapshot(
            raw_amount=int(value["amount"]),
            ui_amount=str(value.get("uiAmountString") or "0"),
        )

    async def get_token_account_mint(self, address: str) -> Optional[str]:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        data = value.get("data")
        if not isinstance(data, dict):
            raise RpcError("getAccountInfo", None, f"not_a_token_account:{address}")
        parsed = data.get("parsed") or {}
        if parsed.get("type") != "account":
            raise RpcError("getAccountInfo", None, f"not_a_token_account:{address}")
        mint = (parsed.get("info") or {}).get("mint")
        return str(mint) if mint else None

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        data_field = value.get("data") or ["", "base64"]
        return {
            "owner": str(value.get("owner") or ""),
            "lamports": int(value.get("lamports") or 0),
            "data": base64.b64decode(data_field[0]) if data_field[0] else b"",
        }

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result.get("value") if isinstance(result, dict) else None
        blockhash = (value or {}).get("blockhash")
        if not blockhash:
            raise RpcError("getLatestBlockhash", None, "missing_blockhash")
        return str(blockhash)

    async def send_transaction(self, raw_tx: bytes) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        result = await self.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )
        if not result:
            raise RpcError("sendTransaction", None, "missing_signature")
        return str(result)

    async def confirm_signatures(
        self,
        signatures: List[str],
        timeout_seconds: float,
        poll_seconds: float = 1.0,
    ) -> None:
        """Wait until every signature reaches the client commitment or fails."""
        pending = list(signatures)
        deadline = time.monotonic() + float(timeout_seconds)
        while pending:
            result = await self.call("getSignatureStatuses", [pending, {"searchTransactionHistory": False}])
            statuses = (result or {}).get("value") or [None] * len(pending)
            still: List[str] = []
            for signature, status in zip(pending, statuses):
                if status is None:
                    still.append(signature)
                    continue
                if status.get("err") is not None:
                    raise RpcError("getSignatureStatuses", None, f"transaction_failed:{signature}:{status['err']}")
                if status.get("confirmationStatus") not in _CONFIRMED:
                    still.append(signature)
            pending = still
            if not pending:
                return
            if time.monotonic() >= deadline:
                raise RpcError("getSignatureStatuses", None, f"confirmation_timeout:{','.join(pending)}")
            log.debug("waiting for %d signature(s) to confirm", len(pending))
            await asyncio.sleep(poll_seconds)
