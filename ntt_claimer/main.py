from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .amounts import TOKEN_DECIMALS, to_display
from .attestation import AttestationFetcher, GuardianVaaSource
from .config import ClaimerConfig, parse_args
from .errors import ClaimerError, ConfigError
from .http_json import JsonHttpClient
from .log_setup import configure_logging
from .models import MessageCoordinates
from .monitor import BalanceMonitor, ClaimSequence, validate_custody_mint
from .redeem import RedeemExecutor
from .retry import RetryScheduler
from .shutdown import CancellationToken, ShutdownController
from .solana_ntt import NttRedeemPlanner
from .solana_rpc import SolanaRpcClient

log = logging.getLogger("ntt_claimer")

USER_AGENT = "ntt-claimer/1.0"


async def run_claimer(cfg: ClaimerConfig, token: Optional[CancellationToken] = None) -> int:
    http = JsonHttpClient(timeout_seconds=cfg.http_timeout_seconds, user_agent=USER_AGENT)
    try:
        rpc = SolanaRpcClient(http, cfg.rpc_url, cfg.commitment)
        await validate_custody_mint(rpc, cfg.custody_address, cfg.token_mint)

        planner = NttRedeemPlanner(
            rpc,
            ntt_program_id=cfg.ntt_program_id,
            token_mint=cfg.token_mint,
            custody_address=cfg.custody_address,
            core_program_id=cfg.wormhole_core_program_id,
        )
        executor = RedeemExecutor(rpc, planner, cfg.private_key, cfg.confirm_timeout_seconds)
        try:
            payer = executor.signer().pubkey()
        except ClaimerError as exc:
            raise ConfigError(f"SOLANA_PRIVATE_KEY is not a valid base58 keypair: {exc}") from exc

        fetcher = AttestationFetcher(
            GuardianVaaSource(http, cfg.guardian_api_url),
            http,
            wormholescan_url=cfg.wormholescan_api_url,
            timeout_seconds=cfg.attestation_timeout_seconds,
        )
        coords = MessageCoordinates(
            chain_id=cfg.emitter_chain,
            emitter_address=cfg.emitter_address,
            sequence=cfg.sequence,
        )
        claim = ClaimSequence(fetcher, executor, RetryScheduler(), coords)

        log.info("Starting NTT claimer")
        log.info("Custody account: %s", cfg.custody_address)
        log.info("Payer: %s", payer)
        log.info(
            "Required amount: %s (raw=%d)",
            to_display(cfg.required_amount_raw, TOKEN_DECIMALS),
            cfg.required_amount_raw,
        )
        log.info("Poll interval: %dms", cfg.poll_interval_ms)

        token = token or CancellationToken()
        controller = ShutdownController(token)
        controller.install()
        try:
            monitor = BalanceMonitor(
                balances=rpc,
                custody_address=cfg.custody_address,
                required_raw=cfg.required_amount_raw,
                poll_interval_seconds=cfg.poll_interval_seconds,
                claim=claim,
                token=token,
            )
            result = await monitor.run()
        finally:
            controller.uninstall()

        if result.claimed:
            log.info("Claim completed successfully; exiting")
        return 0
    finally:
        await http.close()


def main(argv: Optional[list[str]] = None) -> int:
    try:
        cfg = parse_args(argv)
    except ConfigError as exc:
        configure_logging()
        log.error("Fatal error: %s", exc)
        return 1

    configure_logging(cfg.log_dir, cfg.log_level)
    try:
        return asyncio.run(run_claimer(cfg))
    except KeyboardInterrupt:
        return 130
    except Exception:
        log.exception("Fatal error")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
