from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .errors import RedeemSubmissionFailed
from .models import RedeemOutcome
from .solana_ntt import PlannedTransaction
from .solana_rpc import SolanaRpcClient
from .vaa import Attestation

log = logging.getLogger(__name__)

CONFIRM_TIMEOUT_SECONDS = 90.0


class RedeemPlanner(Protocol):
    async def plan(self, attestation: Attestation, payer: Pubkey) -> List[PlannedTransaction]:
        ...


def keypair_from_base58(secret: str) -> Keypair:
    # Keypair.from_base58_string panics on bad input instead of raising
    try:
        raw = base58.b58decode(str(secret).strip())
    except ValueError as exc:
        raise RedeemSubmissionFailed("signer", "private key is not base58") from exc
    if len(raw) != 64:
        raise RedeemSubmissionFailed("signer", f"expected 64 byte keypair, got {len(raw)}")
    try:
        return Keypair.from_bytes(raw)
    except (TypeError, ValueError) as exc:
        raise RedeemSubmissionFailed("signer", "invalid keypair bytes") from exc


class RedeemExecutor:
    """Signs and submits the planned redeem transactions one after another.

    Each transaction is confirmed before the next one is sent, so the
    returned signatures are in submission order and all of them landed.
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        planner: RedeemPlanner,
        private_key: str,
        confirm_timeout_seconds: float = CONFIRM_TIMEOUT_SECONDS,
    ) -> None:
        self.rpc = rpc
        self.planner = planner
        self._private_key = private_key
        self._signer: Optional[Keypair] = None
        self.confirm_timeout_seconds = float(confirm_timeout_seconds)

    def signer(self) -> Keypair:
        if self._signer is None:
            log.info("Creating Solana signer from base58 private key")
            self._signer = keypair_from_base58(self._private_key)
        return self._signer

    async def _send(self, planned: PlannedTransaction, signer: Keypair) -> str:
        blockhash = Hash.from_string(await self.rpc.get_latest_blockhash())
        message = Message.new_with_blockhash(planned.instructions, signer.pubkey(), blockhash)
        tx = Transaction([signer, *planned.extra_signers], message, blockhash)
        signature = await self.rpc.send_transaction(bytes(tx))
        await self.rpc.confirm_signatures([signature], self.confirm_timeout_seconds)
        return signature

    async def redeem(self, attestation: Attestation) -> RedeemOutcome:
        signer = self.signer()
        payer = signer.pubkey()

        try:
            planned = await self.planner.plan(attestation, payer)
        except RedeemSubmissionFailed:
            raise
        except Exception as exc:
            raise RedeemSubmissionFailed("plan", str(exc)) from exc
        if not planned:
            raise RedeemSubmissionFailed("plan", "no transactions planned")

        log.info(
            "Submitting redeem flow (%s)",
            ", ".join(p.label for p in planned),
        )
        signatures: List[str] = []
        for step in planned:
            try:
                signature = await self._send(step, signer)
            except Exception as exc:
                raise RedeemSubmissionFailed(step.label, str(exc)) from exc
            log.info("%s confirmed: %s", step.label, signature)
            signatures.append(signature)

        log.info("Redeem flow completed with %d transaction(s): %s", len(signatures), ", ".join(signatures))
        return RedeemOutcome(signatures=tuple(signatures))
