"""Wormhole VAA decoding for NTT attestations.

A VAA is ``header || body``; the body carries the emitter coordinates and an
application payload. Two NTT payload shapes are recognised:

    transfer                    WormholeTransceiverMessage (prefix 0x9945ff10)
    transfer_standard_relayer   standard-relayer DeliveryInstruction whose
                                inner payload is a WormholeTransceiverMessage

Wire integers are big-endian. Guardian signatures are carried through
untouched; nothing here verifies them.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Optional

from web3 import Web3

from .errors import AttestationDecodeError

VARIANT_TRANSFER = "transfer"
VARIANT_TRANSFER_STANDARD_RELAYER = "transfer_standard_relayer"

TRANSCEIVER_MESSAGE_PREFIX = bytes.fromhex("9945ff10")
NATIVE_TOKEN_TRANSFER_PREFIX = bytes.fromhex("994e5454")
DELIVERY_INSTRUCTION_ID = 1
VAA_KEY_TYPE = 1

_SIGNATURE_LEN = 66  # guardian index + r + s + v


@dataclass(frozen=True, slots=True)
class GuardianSignature:
    guardian_index: int
    signature: bytes  # r || s || recovery id


@dataclass(frozen=True, slots=True)
class NativeTokenTransfer:
    amount: int
    decimals: int
    source_token: bytes
    recipient: bytes
    recipient_chain: int
    additional_payload: bytes = b""


@dataclass(frozen=True, slots=True)
class NttManagerMessage:
    id: bytes
    sender: bytes
    transfer: NativeTokenTransfer
    raw: bytes

    def inbox_key(self, source_chain: int) -> bytes:
        return keccak(struct.pack(">H", source_chain) + self.raw)


@dataclass(frozen=True, slots=True)
class TransceiverMessage:
    source_ntt_manager: bytes
    recipient_ntt_manager: bytes
    manager_message: NttManagerMessage
    transceiver_payload: bytes


@dataclass(frozen=True, slots=True)
class DeliveryInstruction:
    target_chain: int
    target_address: bytes
    requested_receiver_value: int
    extra_receiver_value: int
    execution_info: bytes
    refund_chain: int
    refund_address: bytes
    refund_delivery_provider: bytes
    source_delivery_provider: bytes
    sender_address: bytes
    message_keys: tuple[bytes, ...]


@dataclass(frozen=True, slots=True)
class Attestation:
    """A decoded signed VAA; ``variant`` tags which NTT payload shape it carries."""

    variant: str
    version: int
    guardian_set_index: int
    signatures: tuple[GuardianSignature, ...]
    timestamp: int
    nonce: int
    emitter_chain: int
    emitter_address: bytes
    sequence: int
    consistency_level: int
    payload: bytes
    message: TransceiverMessage
    delivery: Optional[DeliveryInstruction]
    body: bytes
    raw: bytes

    @property
    def hash(self) -> bytes:
        return keccak(self.body)

    @property
    def transfer(self) -> NativeTokenTransfer:
        return self.message.manager_message.transfer


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


class _Cursor:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if n < 0 or end > len(self.data):
            raise ValueError(f"truncated at offset {self.pos} need={n} have={len(self.data) - self.pos}")
        out = self.data[self.pos:end]
        self.pos = end
        return out

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack(">H", self.take(2))[0]

    def u32(self) -> int:
        return struct.unpack(">I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self.take(8))[0]

    def u256(self) -> int:
        return int.from_bytes(self.take(32), "big")

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def rest(self) -> bytes:
        return self.take(self.remaining())

    def expect_end(self, what: str) -> None:
        if self.remaining():
            raise ValueError(f"{what}: {self.remaining()} trailing bytes")


@dataclass(frozen=True, slots=True)
class _Envelope:
    version: int
    guardian_set_index: int
    signatures: tuple[GuardianSignature, ...]
    timestamp: int
    nonce: int
    emitter_chain: int
    emitter_address: bytes
    sequence: int
    consistency_level: int
    payload: bytes
    body: bytes


def _parse_envelope(raw: bytes) -> _Envelope:
    cur = _Cursor(raw)
    version = cur.u8()
    if version != 1:
        raise ValueError(f"unsupported vaa version {version}")
    guardian_set_index = cur.u32()
    count = cur.u8()
    signatures = []
    for _ in range(count):
        chunk = cur.take(_SIGNATURE_LEN)
        signatures.append(GuardianSignature(guardian_index=chunk[0], signature=chunk[1:]))
    body_start = cur.pos
    timestamp = cur.u32()
    nonce = cur.u32()
    emitter_chain = cur.u16()
    emitter_address = cur.take(32)
    sequence = cur.u64()
    consistency_level = cur.u8()
    payload = cur.rest()
    return _Envelope(
        version=version,
        guardian_set_index=guardian_set_index,
        signatures=tuple(signatures),
        timestamp=timestamp,
        nonce=nonce,
        emitter_chain=emitter_chain,
        emitter_address=emitter_address,
        sequence=sequence,
        consistency_level=consistency_level,
        payload=payload,
        body=raw[body_start:],
    )


def _parse_native_token_transfer(data: bytes) -> NativeTokenTransfer:
    cur = _Cursor(data)
    if cur.take(4) != NATIVE_TOKEN_TRANSFER_PREFIX:
        raise ValueError("bad native token transfer prefix")
    decimals = cur.u8()
    amount = cur.u64()
    source_token = cur.take(32)
    recipient = cur.take(32)
    recipient_chain = cur.u16()
    additional = b""
    if cur.remaining():
        additional = cur.take(cur.u16())
    cur.expect_end("native_token_transfer")
    return NativeTokenTransfer(
        amount=amount,
        decimals=decimals,
        source_token=source_token,
        recipient=recipient,
        recipient_chain=recipient_chain,
        additional_payload=additional,
    )


def _parse_manager_message(data: bytes) -> NttManagerMessage:
    cur = _Cursor(data)
    message_id = cur.take(32)
    sender = cur.take(32)
    transfer = _parse_native_token_transfer(cur.take(cur.u16()))
    cur.expect_end("ntt_manager_message")
    return NttManagerMessage(id=message_id, sender=sender, transfer=transfer, raw=data)


def _parse_transceiver_message(data: bytes) -> TransceiverMessage:
    cur = _Cursor(data)
    if cur.take(4) != TRANSCEIVER_MESSAGE_PREFIX:
        raise ValueError("bad transceiver message prefix")
    source_manager = cur.take(32)
    recipient_manager = cur.take(32)
    manager_message = _parse_manager_message(cur.take(cur.u16()))
    transceiver_payload = cur.take(cur.u16())
    cur.expect_end("transceiver_message")
    return TransceiverMessage(
        source_ntt_manager=source_manager,
        recipient_ntt_manager=recipient_manager,
        manager_message=manager_message,
        transceiver_payload=transceiver_payload,
    )


def _parse_delivery_instruction(data: bytes) -> tuple[DeliveryInstruction, TransceiverMessage]:
    cur = _Cursor(data)
    payload_id = cur.u8()
    if payload_id != DELIVERY_INSTRUCTION_ID:
        raise ValueError(f"unexpected relayer payload id {payload_id}")
    target_chain = cur.u16()
    target_address = cur.take(32)
    inner = cur.take(cur.u32())
    requested_value = cur.u256()
    extra_value = cur.u256()
    execution_info = cur.take(cur.u32())
    refund_chain = cur.u16()
    refund_address = cur.take(32)
    refund_provider = cur.take(32)
    source_provider = cur.take(32)
    sender = cur.take(32)
    keys = []
    for _ in range(cur.u8()):
        key_start = cur.pos
        if cur.u8() == VAA_KEY_TYPE:
            cur.take(2 + 32 + 8)
        else:
            cur.take(cur.u32())
        keys.append(data[key_start:cur.pos])
    cur.expect_end("delivery_instruction")

    instruction = DeliveryInstruction(
        target_chain=target_chain,
        target_address=target_address,
        requested_receiver_value=requested_value,
        extra_receiver_value=extra_value,
        execution_info=execution_info,
        refund_chain=refund_chain,
        refund_address=refund_address,
        refund_delivery_provider=refund_provider,
        source_delivery_provider=source_provider,
        sender_address=sender,
        message_keys=tuple(keys),
    )
    return instruction, _parse_transceiver_message(inner)


_DecodeResult = tuple[Optional[Attestation], Optional[str]]


def _attempt(variant: str, raw: bytes, build: Callable[[_Envelope], tuple[TransceiverMessage, Optional[DeliveryInstruction]]]) -> _DecodeResult:
    try:
        env = _parse_envelope(raw)
        message, delivery = build(env)
    except (ValueError, struct.error) as exc:
        return None, str(exc)
    attestation = Attestation(
        variant=variant,
        version=env.version,
        guardian_set_index=env.guardian_set_index,
        signatures=env.signatures,
        timestamp=env.timestamp,
        nonce=env.nonce,
        emitter_chain=env.emitter_chain,
        emitter_address=env.emitter_address,
        sequence=env.sequence,
        consistency_level=env.consistency_level,
        payload=env.payload,
        message=message,
        delivery=delivery,
        body=env.body,
        raw=raw,
    )
    return attestation, None


def try_decode_transfer(raw: bytes) -> _DecodeResult:
    return _attempt(VARIANT_TRANSFER, raw, lambda env: (_parse_transceiver_message(env.payload), None))


def try_decode_transfer_standard_relayer(raw: bytes) -> _DecodeResult:
    def build(env: _Envelope) -> tuple[TransceiverMessage, Optional[DeliveryInstruction]]:
        delivery, message = _parse_delivery_instruction(env.payload)
        return message, delivery

    return _attempt(VARIANT_TRANSFER_STANDARD_RELAYER, raw, build)


_DECODE_ORDER = (
    (VARIANT_TRANSFER, try_decode_transfer),
    (VARIANT_TRANSFER_STANDARD_RELAYER, try_decode_transfer_standard_relayer),
)


def decode_transfer(raw: bytes) -> Attestation:
    attestation, reason = try_decode_transfer(raw)
    if attestation is None:
        raise AttestationDecodeError(VARIANT_TRANSFER, reason or "unknown")
    return attestation


def decode_attestation(raw: bytes) -> Attestation:
    """Decode as a plain transfer first, then as a standard-relayer delivery."""
    variant, reason = "", "no decoders"
    for variant, decoder in _DECODE_ORDER:
        attestation, reason = decoder(raw)
        if attestation is not None:
            return attestation
    raise AttestationDecodeError(variant, reason or "unknown")
