"""Solana instruction building for the NTT inbound redeem flow.

The flow mirrors what the NTT SDK emits for ``ntt.redeem([vaa], payer)``:

    1. core bridge:  secp256k1 + verify_signatures  (batches of 7 guardians)
    2. core bridge:  post_vaa                        (skipped if already posted)
    3. transceiver:  receive_wormhole_message        (skipped if already received)
    4. manager:      create recipient ATA (idempotent), redeem, release_inbound_unlock

Core bridge data is borsh (little-endian); seeds that embed chain ids or
guardian set indexes use big-endian bytes as the on-chain programs do.
"""
from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import CLOCK, INSTRUCTIONS, RENT

from .errors import RedeemSubmissionFailed
from .solana_rpc import SolanaRpcClient
from .vaa import Attestation

log = logging.getLogger(__name__)

WORMHOLE_CORE_PROGRAM_ID = "worm2ZoG2kUd4vFXhvjh93UUH596ayRfgQ2MgjNMTth"
SECP256K1_PROGRAM_ID = Pubkey.from_string("KeccakSecp256k11111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

CORE_IX_POST_VAA = 2
CORE_IX_VERIFY_SIGNATURES = 7
MAX_GUARDIANS = 19
SIGNATURES_PER_VERIFY_TX = 7

_SECP_OFFSETS_LEN = 11
_SECP_ENTRY_LEN = 20 + 64 + 1


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


IX_RECEIVE_WORMHOLE_MESSAGE = anchor_discriminator("receive_wormhole_message")
IX_REDEEM = anchor_discriminator("redeem")
IX_RELEASE_INBOUND_UNLOCK = anchor_discriminator("release_inbound_unlock")


def _pda(program_id: Pubkey, *seeds: bytes) -> Pubkey:
    return Pubkey.find_program_address(list(seeds), program_id)[0]


def _chain_seed(chain_id: int) -> bytes:
    return struct.pack(">H", chain_id)


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    return _pda(ASSOCIATED_TOKEN_PROGRAM_ID, bytes(owner), bytes(token_program), bytes(mint))


def parse_guardian_set(data: bytes) -> List[bytes]:
    """Guardian set account: index u32, keys Vec<[u8; 20]>, creation u32, expiration u32."""
    if len(data) < 8:
        raise ValueError("guardian_set_account_too_short")
    (count,) = struct.unpack_from("<I", data, 4)
    end = 8 + count * 20
    if len(data) < end:
        raise ValueError("guardian_set_account_truncated")
    return [data[8 + i * 20:8 + (i + 1) * 20] for i in range(count)]


@dataclass(slots=True)
class PlannedTransaction:
    label: str
    instructions: List[Instruction]
    extra_signers: List[Keypair] = field(default_factory=list)


class CoreBridgeAccounts:
    def __init__(self, program_id: Pubkey) -> None:
        self.program_id = program_id
        self.bridge = _pda(program_id, b"Bridge")

    def guardian_set(self, index: int) -> Pubkey:
        return _pda(self.program_id, b"GuardianSet", struct.pack(">I", index))

    def posted_vaa(self, vaa_hash: bytes) -> Pubkey:
        return _pda(self.program_id, b"PostedVAA", vaa_hash)


class NttAccounts:
    """PDAs of an NTT manager whose wormhole transceiver lives in the same program."""

    def __init__(self, manager_program_id: Pubkey, transceiver_program_id: Optional[Pubkey] = None) -> None:
        self.manager = manager_program_id
        self.transceiver = transceiver_program_id or manager_program_id
        self.config = _pda(self.manager, b"config")
        self.token_authority = _pda(self.manager, b"token_authority")
        self.outbox_rate_limit = _pda(self.manager, b"outbox_rate_limit")
        self.registered_transceiver = _pda(self.manager, b"registered_transceiver", bytes(self.transceiver))
        self.transceiver_config = _pda(self.transceiver, b"config")

    def peer(self, chain_id: int) -> Pubkey:
        return _pda(self.manager, b"peer", _chain_seed(chain_id))

    def inbox_rate_limit(self, chain_id: int) -> Pubkey:
        return _pda(self.manager, b"inbox_rate_limit", _chain_seed(chain_id))

    def inbox_item(self, inbox_key: bytes) -> Pubkey:
        return _pda(self.manager, b"inbox_item", inbox_key)

    def transceiver_peer(self, chain_id: int) -> Pubkey:
        return _pda(self.transceiver, b"transceiver_peer", _chain_seed(chain_id))

    def transceiver_message(self, chain_id: int, message_id: bytes) -> Pubkey:
        return _pda(self.transceiver, b"transceiver_message", _chain_seed(chain_id), message_id)


def secp256k1_instruction(guardian_keys: Sequence[bytes], signatures: Sequence[bytes], message: bytes) -> Instruction:
    """Native secp256k1 verify instruction; it must sit at index 0 of its transaction."""
    count = len(signatures)
    data_start = 1 + count * _SECP_OFFSETS_LEN
    message_offset = data_start + count * _SECP_ENTRY_LEN
    header = bytearray([count])
    body = bytearray()
    for i, (key, sig) in enumerate(zip(guardian_keys, signatures)):
        eth_offset = data_start + i * _SECP_ENTRY_LEN
        header += struct.pack(
            "<HBHBHHB",
            eth_offset + 20,  # signature
            0,
            eth_offset,  # eth address
            0,
            message_offset,
            len(message),
            0,
        )
        body += key + sig
    return Instruction(SECP256K1_PROGRAM_ID, bytes(header + body + message), [])


def build_verify_signatures(
    core: CoreBridgeAccounts,
    attestation: Attestation,
    guardian_keys: Sequence[bytes],
    payer: Pubkey,
    signature_set: Keypair,
) -> List[PlannedTransaction]:
    guardian_set = core.guardian_set(attestation.guardian_set_index)
    message = attestation.hash
    out: List[PlannedTransaction] = []
    sigs = list(attestation.signatures)
    for start in range(0, len(sigs), SIGNATURES_PER_VERIFY_TX):
        batch = sigs[start:start + SIGNATURES_PER_VERIFY_TX]
        signers = [-1] * MAX_GUARDIANS
        keys: List[bytes] = []
        for pos, sig in enumerate(batch):
            if sig.guardian_index >= len(guardian_keys) or sig.guardian_index >= MAX_GUARDIANS:
                raise ValueError(f"guardian_index_out_of_range:{sig.guardian_index}")
            signers[sig.guardian_index] = pos
            keys.append(guardian_keys[sig.guardian_index])

        verify = Instruction(
            core.program_id,
            bytes([CORE_IX_VERIFY_SIGNATURES]) + struct.pack("<19b", *signers),
            [
                AccountMeta(payer, True, True),
                AccountMeta(guardian_set, False, False),
                AccountMeta(signature_set.pubkey(), True, True),
                AccountMeta(INSTRUCTIONS, False, False),
                AccountMeta(RENT, False, False),
                AccountMeta(SYSTEM_PROGRAM_ID, False, False),
            ],
        )
        out.append(
            PlannedTransaction(
                label=f"verify_signatures[{start // SIGNATURES_PER_VERIFY_TX}]",
                instructions=[secp256k1_instruction(keys, [s.signature for s in batch], message), verify],
                extra_signers=[signature_set],
            )
        )
    return out


def build_post_vaa(
    core: CoreBridgeAccounts,
    attestation: Attestation,
    payer: Pubkey,
    signature_set: Pubkey,
) -> Instruction:
    data = (
        bytes([CORE_IX_POST_VAA])
        + struct.pack(
            "<BIIIH",
            attestation.version,
            attestation.guardian_set_index,
            attestation.timestamp,
            attestation.nonce,
            attestation.emitter_chain,
        )
        + attestation.emitter_address
        + struct.pack("<QB", attestation.sequence, attestation.consistency_level)
        + struct.pack("<I", len(attestation.payload))
        + attestation.payload
    )
    return Instruction(
        core.program_id,
        data,
        [
            AccountMeta(core.guardian_set(attestation.guardian_set_index), False, False),
            AccountMeta(core.bridge, False, False),
            AccountMeta(signature_set, False, False),
            AccountMeta(core.posted_vaa(attestation.hash), False, True),
            AccountMeta(payer, True, True),
            AccountMeta(CLOCK, False, False),
            AccountMeta(RENT, False, False),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        ],
    )


def build_receive_message(
    ntt: NttAccounts,
    core: CoreBridgeAccounts,
    attestation: Attestation,
    payer: Pubkey,
) -> Instruction:
    chain = attestation.emitter_chain
    return Instruction(
        ntt.transceiver,
        IX_RECEIVE_WORMHOLE_MESSAGE,
        [
            AccountMeta(payer, True, True),
            AccountMeta(ntt.transceiver_config, False, False),
            AccountMeta(ntt.transceiver_peer(chain), False, False),
            AccountMeta(core.posted_vaa(attestation.hash), False, False),
            AccountMeta(ntt.transceiver_message(chain, attestation.message.manager_message.id), False, True),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        ],
    )


def build_create_ata_idempotent(payer: Pubkey, owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([1]),
        [
            AccountMeta(payer, True, True),
            AccountMeta(associated_token_address(owner, mint, token_program), False, True),
            AccountMeta(owner, False, False),
            AccountMeta(mint, False, False),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
            AccountMeta(token_program, False, False),
        ],
    )


def build_redeem(
    ntt: NttAccounts,
    attestation: Attestation,
    payer: Pubkey,
    mint: Pubkey,
) -> Instruction:
    chain = attestation.emitter_chain
    manager_message = attestation.message.manager_message
    return Instruction(
        ntt.manager,
        IX_REDEEM,
        [
            AccountMeta(payer, True, True),
            AccountMeta(ntt.config, False, False),
            AccountMeta(ntt.peer(chain), False, False),
            AccountMeta(ntt.transceiver_message(chain, manager_message.id), False, False),
            AccountMeta(ntt.registered_transceiver, False, False),
            AccountMeta(mint, False, False),
            AccountMeta(ntt.inbox_item(manager_message.inbox_key(chain)), False, True),
            AccountMeta(ntt.inbox_rate_limit(chain), False, True),
            AccountMeta(ntt.outbox_rate_limit, False, True),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        ],
    )


def build_release_inbound_unlock(
    ntt: NttAccounts,
    attestation: Attestation,
    payer: Pubkey,
    mint: Pubkey,
    custody: Pubkey,
    token_program: Pubkey,
    revert_on_delay: bool = False,
) -> Instruction:
    chain = attestation.emitter_chain
    manager_message = attestation.message.manager_message
    recipient_owner = Pubkey(manager_message.transfer.recipient)
    return Instruction(
        ntt.manager,
        IX_RELEASE_INBOUND_UNLOCK + bytes([1 if revert_on_delay else 0]),
        [
            AccountMeta(payer, True, True),
            AccountMeta(ntt.config, False, False),
            AccountMeta(ntt.inbox_item(manager_message.inbox_key(chain)), False, True),
            AccountMeta(associated_token_address(recipient_owner, mint, token_program), False, True),
            AccountMeta(ntt.token_authority, False, False),
            AccountMeta(mint, False, True),
            AccountMeta(token_program, False, False),
            AccountMeta(custody, False, True),
        ],
    )


class NttRedeemPlanner:
    """Turns an attestation into the ordered transactions that redeem it.

    Reads chain state to skip steps that already landed (posted VAA,
    received transceiver message), which keeps a retried redeem from
    tripping over its own earlier partial progress.
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        ntt_program_id: str,
        token_mint: str,
        custody_address: str,
        core_program_id: str = WORMHOLE_CORE_PROGRAM_ID,
    ) -> None:
        self.rpc = rpc
        self.ntt = NttAccounts(Pubkey.from_string(ntt_program_id))
        self.core = CoreBridgeAccounts(Pubkey.from_string(core_program_id))
        self.mint = Pubkey.from_string(token_mint)
        self.custody = Pubkey.from_string(custody_address)

    async def _exists(self, address: Pubkey) -> bool:
        return await self.rpc.get_account_info(str(address)) is not None

    async def _token_program(self) -> Pubkey:
        info = await self.rpc.get_account_info(str(self.mint))
        if info is None or not info.get("owner"):
            raise RedeemSubmissionFailed("plan", f"mint_account_missing:{self.mint}")
        return Pubkey.from_string(info["owner"])

    async def _guardian_keys(self, index: int) -> List[bytes]:
        info = await self.rpc.get_account_info(str(self.core.guardian_set(index)))
        if info is None:
            raise RedeemSubmissionFailed("plan", f"guardian_set_missing:{index}")
        return parse_guardian_set(info["data"])

    async def plan(self, attestation: Attestation, payer: Pubkey) -> List[PlannedTransaction]:
        out: List[PlannedTransaction] = []
        chain = attestation.emitter_chain
        message_id = attestation.message.manager_message.id

        if await self._exists(self.core.posted_vaa(attestation.hash)):
            log.info("VAA already posted on-chain; skipping postVaa")
        else:
            keys = await self._guardian_keys(attestation.guardian_set_index)
            signature_set = Keypair()
            out.extend(build_verify_signatures(self.core, attestation, keys, payer, signature_set))
            out.append(
                PlannedTransaction(
                    label="post_vaa",
                    instructions=[build_post_vaa(self.core, attestation, payer, signature_set.pubkey())],
                )
            )

        if await self._exists(self.ntt.transceiver_message(chain, message_id)):
            log.info("Transceiver message already received; skipping receiveWormholeMessage")
        else:
            out.append(
                PlannedTransaction(
                    label="receive_wormhole_message",
                    instructions=[build_receive_message(self.ntt, self.core, attestation, payer)],
                )
            )

        token_program = await self._token_program()
        recipient_owner = Pubkey(attestation.message.manager_message.transfer.recipient)
        out.append(
            PlannedTransaction(
                label="redeem_release",
                instructions=[
                    build_create_ata_idempotent(payer, recipient_owner, self.mint, token_program),
                    build_redeem(self.ntt, attestation, payer, self.mint),
                    build_release_inbound_unlock(
                        self.ntt, attestation, payer, self.mint, self.custody, token_program
                    ),
                ],
            )
        )
        return out
