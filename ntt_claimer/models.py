from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    raw_amount: int
    ui_amount: str


@dataclass(frozen=True, slots=True)
class MessageCoordinates:
    chain_id: int
    emitter_address: str
    sequence: int


@dataclass(frozen=True, slots=True)
class RedeemOutcome:
    signatures: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.signatures:
            raise ValueError("redeem_outcome_empty")
