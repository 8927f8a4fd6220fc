from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from .amounts import TOKEN_DECIMALS, to_display
from .attestation import AttestationFetcher
from .errors import ConfigError, MintMismatchError
from .models import BalanceSnapshot, MessageCoordinates, RedeemOutcome
from .redeem import RedeemExecutor
from .retry import RetryScheduler
from .shutdown import CancellationToken

log = logging.getLogger(__name__)


class MonitorState(str, enum.Enum):
    POLLING = "polling"
    THRESHOLD_MET = "threshold_met"
    REDEEMING = "redeeming"
    SHUTTING_DOWN = "shutting_down"
    DONE = "done"


@dataclass(slots=True)
class MonitorResult:
    claimed: bool
    cycles: int
    outcome: Optional[RedeemOutcome] = None


class BalanceSource(Protocol):
    async def get_token_account_balance(self, address: str) -> BalanceSnapshot:
        ...


class MintSource(Protocol):
    async def get_token_account_mint(self, address: str) -> Optional[str]:
        ...


async def validate_custody_mint(rpc: MintSource, custody_address: str, token_mint: str) -> None:
    onchain = await rpc.get_token_account_mint(custody_address)
    if onchain is None:
        raise ConfigError(f"custody account not found: {custody_address}")
    if onchain != token_mint:
        raise MintMismatchError(expected=token_mint, onchain=onchain)


class ClaimSequence:
    """Fetch the attestation, then redeem it, retried as one unit until it lands."""

    def __init__(
        self,
        fetcher: AttestationFetcher,
        executor: RedeemExecutor,
        scheduler: RetryScheduler,
        coords: MessageCoordinates,
    ) -> None:
        self.fetcher = fetcher
        self.executor = executor
        self.scheduler = scheduler
        self.coords = coords

    async def attempt(self) -> RedeemOutcome:
        attestation = await self.fetcher.fetch(self.coords)
        return await self.executor.redeem(attestation)

    async def __call__(self) -> RedeemOutcome:
        return await self.scheduler.run_until_success(self.attempt)


class BalanceMonitor:
    """Polls the custody balance until it covers the required amount, then claims.

    The cancellation token is only consulted between cycles; a cycle that
    already started (including a claim) always runs to the end.
    """

    def __init__(
        self,
        balances: BalanceSource,
        custody_address: str,
        required_raw: int,
        poll_interval_seconds: float,
        claim: Callable[[], Awaitable[RedeemOutcome]],
        token: CancellationToken,
        decimals: int = TOKEN_DECIMALS,
        symbol: str = "",
    ) -> None:
        self.balances = balances
        self.custody_address = custody_address
        self.required_raw = int(required_raw)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.claim = claim
        self.token = token
        self.decimals = int(decimals)
        self.symbol = symbol
        self.state = MonitorState.POLLING
        self.cycles = 0

    def is_sufficient(self, snapshot: BalanceSnapshot) -> bool:
        return snapshot.raw_amount >= self.required_raw

    async def _poll(self) -> Optional[BalanceSnapshot]:
        try:
            return await self.balances.get_token_account_balance(self.custody_address)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("Polling cycle error: %s", exc)
            return None

    async def run(self) -> MonitorResult:
        unit = f" {self.symbol}" if self.symbol else ""
        while not self.token.cancelled:
            self.state = MonitorState.POLLING
            self.cycles += 1

            snapshot = await self._poll()
            if snapshot is not None:
                enough = self.is_sufficient(snapshot)
                log.info(
                    "Custody balance: %s%s (raw=%d) | threshold raw=%d | sufficient=%s",
                    snapshot.ui_amount,
                    unit,
                    snapshot.raw_amount,
                    self.required_raw,
                    str(enough).lower(),
                )
                if enough:
                    self.state = MonitorState.THRESHOLD_MET
                    log.info(
                        "Balance threshold of %s%s reached; beginning redeem sequence",
                        to_display(self.required_raw, self.decimals),
                        unit,
                    )
                    self.state = MonitorState.REDEEMING
                    outcome = await self.claim()
                    self.state = MonitorState.DONE
                    return MonitorResult(claimed=True, cycles=self.cycles, outcome=outcome)

            if self.token.cancelled or await self.token.wait(self.poll_interval_seconds):
                break

        self.state = MonitorState.SHUTTING_DOWN
        log.info("Exited without claiming due to shutdown signal")
        self.state = MonitorState.DONE
        return MonitorResult(claimed=False, cycles=self.cycles)
