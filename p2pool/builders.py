"""Bitcoin transactions, headers and blocks assembled from ckpool work."""

from __future__ import annotations

import hashlib
import re
import struct
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")
_WITNESS_MAGIC = bytes.fromhex("6a24aa21a9ed")
_NULL_TXID = "00" * 32
_NULL_VOUT = 0xFFFFFFFF
_U256_MASK = (1 << 256) - 1


def double_sha256(data: bytes) -> bytes:
    """Return SHA-256 applied twice to ``data``."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _parse_u32_hex(text: str) -> int:
    if not text:
        raise ValueError("cannot parse integer from empty string")
    if not _HEX_DIGITS.fullmatch(text):
        raise ValueError("invalid digit found in string")
    value = int(text, 16)
    if value > 0xFFFFFFFF:
        raise ValueError("number too large to fit in target type")
    return value


def _normalize_hash(text: str) -> str:
    if len(text) != 64 or not _HEX_DIGITS.fullmatch(text):
        raise ValueError(f"invalid 32-byte hash: {text!r}")
    return text.lower()


def _hash_to_internal(display_hex: str) -> bytes:
    return bytes.fromhex(_normalize_hash(display_hex))[::-1]


def _varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def _var_bytes(data: bytes) -> bytes:
    return _varint(len(data)) + data


class _Reader:
    """Sequential reader over consensus-encoded bytes."""

    _VARINT_WIDTHS = {0xFD: (2, 0xFD), 0xFE: (4, 0x10000), 0xFF: (8, 0x100000000)}

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ValueError("unexpected end of transaction data")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def uint(self, size: int) -> int:
        return int.from_bytes(self.take(size), "little")

    def varint(self) -> int:
        first = self.uint(1)
        if first < 0xFD:
            return first
        width, minimum = self._VARINT_WIDTHS[first]
        value = self.uint(width)
        if value < minimum:
            raise ValueError("non-minimal varint")
        return value

    def var_bytes(self) -> bytes:
        return self.take(self.varint())


def _merkle_root(hashes: Sequence[bytes]) -> Optional[bytes]:
    if not hashes:
        return None
    level = list(hashes)
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [double_sha256(left + right) for left, right in zip(level[::2], level[1::2])]
    return level[0]


@dataclass
class TxIn:
    """A transaction input; ``prev_txid`` is in display (reversed) hex."""

    prev_txid: str
    vout: int
    script_sig: bytes
    sequence: int
    witness: list[bytes] = field(default_factory=list)

    def _serialize(self) -> bytes:
        return (
            _hash_to_internal(self.prev_txid)
            + struct.pack("<I", self.vout)
            + _var_bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )

    @classmethod
    def _read(cls, reader: _Reader) -> "TxIn":
        prev_txid = reader.take(32)[::-1].hex()
        vout = reader.uint(4)
        script_sig = reader.var_bytes()
        sequence = reader.uint(4)
        return cls(prev_txid=prev_txid, vout=vout, script_sig=script_sig, sequence=sequence)


@dataclass
class TxOut:
    """A transaction output with its value in satoshis."""

    value: int
    script_pubkey: bytes

    def _serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + _var_bytes(self.script_pubkey)

    @classmethod
    def _read(cls, reader: _Reader) -> "TxOut":
        value = reader.uint(8)
        return cls(value=value, script_pubkey=reader.var_bytes())


@dataclass
class Transaction:
    """A bitcoin transaction."""

    version: int
    inputs: list[TxIn]
    outputs: list[TxOut]
    lock_time: int

    def serialize(self, include_witness: bool = True) -> bytes:
        """Consensus-encode; the witness form is used only when witness data exists."""
        segwit = include_witness and (
            not self.inputs or any(txin.witness for txin in self.inputs)
        )
        parts = [struct.pack("<i", self.version)]
        if segwit:
            parts.append(b"\x00\x01")
        parts.append(_varint(len(self.inputs)))
        parts.extend(txin._serialize() for txin in self.inputs)
        parts.append(_varint(len(self.outputs)))
        parts.extend(txout._serialize() for txout in self.outputs)
        if segwit:
            for txin in self.inputs:
                parts.append(_varint(len(txin.witness)))
                parts.extend(_var_bytes(item) for item in txin.witness)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def txid(self) -> str:
        """Return the transaction id in display hex."""
        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    def _wtxid_bytes(self) -> bytes:
        return double_sha256(self.serialize(include_witness=True))

    def is_coinbase(self) -> bool:
        """True when the single input spends the null outpoint."""
        return (
            len(self.inputs) == 1
            and self.inputs[0].prev_txid.lower() == _NULL_TXID
            and self.inputs[0].vout == _NULL_VOUT
        )


def decode_transaction(data: bytes) -> Transaction:
    """Decode a consensus-encoded transaction; raise ValueError if malformed."""
    reader = _Reader(bytes(data))
    version = int.from_bytes(reader.take(4), "little", signed=True)
    inputs = [TxIn._read(reader) for _ in range(reader.varint())]
    if inputs:
        outputs = [TxOut._read(reader) for _ in range(reader.varint())]
        return Transaction(version, inputs, outputs, reader.uint(4))

    segwit_flag = reader.uint(1)
    if segwit_flag != 1:
        raise ValueError(f"unsupported segwit version: {segwit_flag}")
    inputs = [TxIn._read(reader) for _ in range(reader.varint())]
    outputs = [TxOut._read(reader) for _ in range(reader.varint())]
    for txin in inputs:
        txin.witness = [reader.var_bytes() for _ in range(reader.varint())]
    if inputs and not any(txin.witness for txin in inputs):
        raise ValueError("witness flag set but no witnesses present")
    return Transaction(version, inputs, outputs, reader.uint(4))


def compact_to_target(bits: int) -> int:
    """Expand a compact difficulty encoding into a 256-bit target."""
    exponent = bits >> 24
    if exponent <= 3:
        mantissa, shift = (bits & 0xFFFFFF) >> (8 * (3 - exponent)), 0
    else:
        mantissa, shift = bits & 0xFFFFFF, 8 * (exponent - 3)
    if mantissa > 0x7FFFFF:
        return 0
    return (mantissa << shift) & _U256_MASK


@dataclass
class BlockHeader:
    """An 80-byte bitcoin block header; hashes are in display hex."""

    version: int
    prev_blockhash: str
    merkle_root: str
    time: int
    bits: int
    nonce: int

    def serialize(self) -> bytes:
        """Consensus-encode the header."""
        return (
            struct.pack("<i", self.version)
            + _hash_to_internal(self.prev_blockhash)
            + _hash_to_internal(self.merkle_root)
            + struct.pack("<III", self.time, self.bits, self.nonce)
        )

    def block_hash(self) -> str:
        """Return the block hash in display hex."""
        return double_sha256(self.serialize())[::-1].hex()

    def target(self) -> int:
        """Return the target encoded by ``bits``."""
        return compact_to_target(self.bits)

    def validate_pow(self, required_target: int) -> str:
        """Return the block hash if it meets ``required_target``; raise ValueError otherwise."""
        target = self.target()
        if target != required_target:
            raise ValueError("block target incorrect")
        block_hash = self.block_hash()
        if int(block_hash, 16) > target:
            raise ValueError("block target correct but not attained")
        return block_hash


@dataclass
class Block:
    """A bitcoin block: header and transactions, coinbase first."""

    header: BlockHeader
    txdata: list[Transaction]

    def check_merkle_root(self) -> bool:
        """True when the header commits to the transactions' merkle root."""
        root = compute_merkle_root_from_txids(tx.txid() for tx in self.txdata)
        return root is not None and root == self.header.merkle_root.lower()

    def check_witness_commitment(self) -> bool:
        """True when the coinbase witness commitment matches, or no witness data exists."""
        if all(not txin.witness for tx in self.txdata for txin in tx.inputs):
            return True
        coinbase = self.txdata[0]
        if not coinbase.is_coinbase():
            return False
        commitment_script = next(
            (
                out.script_pubkey
                for out in reversed(coinbase.outputs)
                if len(out.script_pubkey) >= 38 and out.script_pubkey[:6] == _WITNESS_MAGIC
            ),
            None,
        )
        if commitment_script is None:
            return False
        witness = coinbase.inputs[0].witness
        if len(witness) != 1 or len(witness[0]) != 32:
            return False
        wtxids = [bytes(32)] + [tx._wtxid_bytes() for tx in self.txdata[1:]]
        witness_root = _merkle_root(wtxids)
        return double_sha256(witness_root + witness[0]) == commitment_script[6:38]


def compute_merkle_root_from_txids(txids: Iterable[str]) -> Optional[str]:
    """Return the merkle root (display hex) of txids, or None if there are none."""
    root = _merkle_root([_hash_to_internal(txid) for txid in txids])
    return None if root is None else root[::-1].hex()


def build_coinbase_from_share(userworkbase, share) -> Transaction:
    """Assemble the coinbase from the user workbase halves and the share's nonces."""
    params = userworkbase.params
    complete_tx = f"{params.coinb1}{share.enonce1}{share.nonce2}{params.coinb2}"
    return decode_transaction(bytes.fromhex(complete_tx))


def decode_transactions(txns) -> list[Transaction]:
    """Decode workbase transactions from their hex data."""
    return [decode_transaction(bytes.fromhex(txn.data)) for txn in txns]


def decode_txids(txns) -> list[str]:
    """Validate and return the txids of workbase transactions."""
    return [_normalize_hash(txn.txid) for txn in txns]


def build_bitcoin_header(workbase, share, merkle_root: str) -> BlockHeader:
    """Build a block header from the workbase template and the share's nonce and time."""
    gbt = workbase.gbt
    return BlockHeader(
        version=gbt.version,
        prev_blockhash=_normalize_hash(gbt.previousblockhash),
        merkle_root=merkle_root,
        time=int(share.ntime),
        bits=_parse_u32_hex(gbt.bits),
        nonce=_parse_u32_hex(share.nonce),
    )


def build_bitcoin_block(workbase, userworkbase, share) -> Block:
    """Build the full bitcoin block a share corresponds to."""
    coinbase = build_coinbase_from_share(userworkbase, share)
    txdata = [coinbase, *decode_transactions(workbase.txns)]
    txids = [coinbase.txid(), *decode_txids(workbase.txns)]
    merkle_root = compute_merkle_root_from_txids(txids)
    if merkle_root is None:
        raise ValueError("Failed to compute merkle root")
    header = build_bitcoin_header(workbase, share, merkle_root)
    return Block(header=header, txdata=txdata)