"""Share chain blocks: headers, block hashes, and their storage form."""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

import cbor2

from p2pool.builders import (
    Transaction,
    build_coinbase_from_share,
    compute_merkle_root_from_txids,
    decode_transaction,
    decode_transactions,
    decode_txids,
    double_sha256,
)
from p2pool.genesis import GenesisData
from p2pool.miner_message import MinerShare

_HEX = re.compile(r"[0-9a-fA-F]*")
_SECP256K1_P = 2**256 - 2**32 - 977


def _parse_hash(text: Any) -> str:
    if not isinstance(text, str) or len(text) != 64 or not _HEX.fullmatch(text):
        raise ValueError(f"Invalid block hash string: {text!r}")
    return text.lower()


def _on_curve(x: int, y: int) -> bool:
    return (y * y - (x * x * x + 7)) % _SECP256K1_P == 0


def _parse_pubkey(text: Any) -> str:
    """Validate a hex encoded secp256k1 public key and return it lower-cased."""
    if not isinstance(text, str) or not _HEX.fullmatch(text) or len(text) % 2:
        raise ValueError(f"invalid public key: {text!r}")
    raw = bytes.fromhex(text)
    if len(raw) == 33 and raw[0] in (2, 3):
        x = int.from_bytes(raw[1:], "big")
        if x >= _SECP256K1_P:
            raise ValueError("invalid public key: x coordinate out of range")
        y_squared = (pow(x, 3, _SECP256K1_P) + 7) % _SECP256K1_P
        y = pow(y_squared, (_SECP256K1_P + 1) // 4, _SECP256K1_P)
        if not _on_curve(x, y):
            raise ValueError("invalid public key: point not on curve")
    elif len(raw) == 65 and raw[0] == 4:
        x = int.from_bytes(raw[1:33], "big")
        y = int.from_bytes(raw[33:], "big")
        if x >= _SECP256K1_P or y >= _SECP256K1_P or not _on_curve(x, y):
            raise ValueError("invalid public key: point not on curve")
    else:
        raise ValueError(f"invalid public key: {text!r}")
    return text.lower()


class ShareBlockHash:
    """The hash of a share block, shown as reversed (display) hex."""

    __slots__ = ("_hex",)

    def __init__(self, value: Union[str, "ShareBlockHash"]) -> None:
        if isinstance(value, ShareBlockHash):
            self._hex = value._hex
        else:
            self._hex = _parse_hash(value)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ShareBlockHash":
        """Build from 32 bytes in internal byte order."""
        if len(data) != 32:
            raise ValueError("a block hash is 32 bytes")
        return cls(bytes(data)[::-1].hex())

    def as_bytes(self) -> bytes:
        """Return the 32 hash bytes in internal byte order."""
        return bytes.fromhex(self._hex)[::-1]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ShareBlockHash):
            return self._hex == other._hex
        if isinstance(other, str):
            return self._hex == _parse_hash(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._hex)

    def __str__(self) -> str:
        return self._hex

    def __repr__(self) -> str:
        return f"ShareBlockHash({self._hex!r})"


def _coerce_hash(value: Union[str, ShareBlockHash]) -> ShareBlockHash:
    return value if isinstance(value, ShareBlockHash) else ShareBlockHash(value)


@dataclass(eq=False)
class ShareHeader:
    """Header of a share block; headers are equal when their miner shares' hashes are."""

    miner_share: MinerShare
    miner_pubkey: str
    merkle_root: str
    prev_share_blockhash: Optional[ShareBlockHash] = None
    uncles: list[ShareBlockHash] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.miner_pubkey = _parse_pubkey(self.miner_pubkey)
        self.merkle_root = _parse_hash(self.merkle_root)
        if self.prev_share_blockhash is not None:
            self.prev_share_blockhash = _coerce_hash(self.prev_share_blockhash)
        self.uncles = [_coerce_hash(uncle) for uncle in self.uncles]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ShareHeader):
            return NotImplemented
        return self.miner_share.hash == other.miner_share.hash

    __hash__ = None  # type: ignore[assignment]

    @classmethod
    def genesis(
        cls, genesis_data: GenesisData, public_key: str, merkle_root: str
    ) -> "ShareHeader":
        """Build the genesis header from a network's genesis data."""
        return cls(
            miner_share=MinerShare.genesis(genesis_data),
            miner_pubkey=public_key,
            merkle_root=merkle_root,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the serializable form of the header."""
        return {
            "miner_share": self.miner_share.to_dict(),
            "prev_share_blockhash": (
                None if self.prev_share_blockhash is None else str(self.prev_share_blockhash)
            ),
            "uncles": [str(uncle) for uncle in self.uncles],
            "miner_pubkey": self.miner_pubkey,
            "merkle_root": self.merkle_root,
        }

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> "ShareHeader":
        if not isinstance(data, Mapping):
            raise ValueError("header: expected a map")
        try:
            prev = data["prev_share_blockhash"]
            uncles = data["uncles"]
            if not isinstance(uncles, list):
                raise ValueError("uncles: expected a list")
            return cls(
                miner_share=MinerShare.from_dict(data["miner_share"]),
                miner_pubkey=data["miner_pubkey"],
                merkle_root=data["merkle_root"],
                prev_share_blockhash=None if prev is None else ShareBlockHash(prev),
                uncles=[ShareBlockHash(uncle) for uncle in uncles],
            )
        except KeyError as err:
            raise ValueError(f"missing field `{err.args[0]}`") from None


def _merkle_root_of(transactions: Iterable[Transaction]) -> str:
    root = compute_merkle_root_from_txids(tx.txid() for tx in transactions)
    if root is None:
        raise ValueError("Failed to compute merkle root")
    return root


@dataclass
class ShareBlock:
    """A block on the share chain: header, transactions and cached block hash."""

    header: ShareHeader
    transactions: list[Transaction] = field(default_factory=list)
    cached_blockhash: Optional[ShareBlockHash] = None

    @classmethod
    def new(
        cls, miner_share: MinerShare, miner_pubkey: str, transactions: Iterable[Transaction]
    ) -> "ShareBlock":
        """Build a share block whose transactions start with the coinbase."""
        transactions = list(transactions)
        header = ShareHeader(
            miner_share=miner_share,
            miner_pubkey=miner_pubkey,
            merkle_root=_merkle_root_of(transactions),
        )
        block = cls(header=header, transactions=transactions)
        block.compute_blockhash()
        return block

    def compute_blockhash(self) -> ShareBlockHash:
        """Hash the header and transactions, cache and return the result."""
        payload = cbor2.dumps(
            {
                "header": self.header.to_dict(),
                "transactions": [tx.serialize() for tx in self.transactions],
            },
            canonical=True,
        )
        self.cached_blockhash = ShareBlockHash.from_bytes(double_sha256(payload))
        return self.cached_blockhash

    @classmethod
    def build_genesis(
        cls, genesis_data: GenesisData, public_key: str, coinbase: Transaction
    ) -> "ShareBlock":
        """Build the genesis share block paying ``coinbase``."""
        transactions = [coinbase]
        header = ShareHeader.genesis(genesis_data, public_key, _merkle_root_of(transactions))
        block = cls(header=header, transactions=transactions)
        block.compute_blockhash()
        return block


class ShareBlockBuilder:
    """Builds a share block from a required header and optional transactions."""

    def __init__(self, header: ShareHeader) -> None:
        self._header = header
        self._transactions: list[Transaction] = []

    def with_transactions(self, transactions: Iterable[Transaction]) -> "ShareBlockBuilder":
        self._transactions = list(transactions)
        return self

    def build(self) -> ShareBlock:
        block = ShareBlock(header=self._header, transactions=self._transactions)
        block.compute_blockhash()
        return block


@dataclass
class StorageShareBlock:
    """The storage form of a share block, without its transactions."""

    header: ShareHeader

    @classmethod
    def from_share_block(cls, block: ShareBlock) -> "StorageShareBlock":
        return cls(header=block.header)

    def into_share_block(self) -> ShareBlock:
        """Return a share block with no transactions."""
        return ShareBlockBuilder(self.header).build()

    def into_share_block_with_transactions(
        self, transactions: Iterable[Transaction]
    ) -> ShareBlock:
        """Return a share block holding ``transactions``."""
        return ShareBlockBuilder(self.header).with_transactions(transactions).build()

    def cbor_serialize(self) -> bytes:
        """Encode as CBOR."""
        return cbor2.dumps({"header": self.header.to_dict()})

    @classmethod
    def cbor_deserialize(cls, data: bytes) -> "StorageShareBlock":
        """Decode from CBOR; raise ValueError when the bytes are not a storage block."""
        try:
            decoded = cbor2.loads(data)
        except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError) as err:
            raise ValueError(f"invalid CBOR: {err}") from err
        if not isinstance(decoded, Mapping) or "header" not in decoded:
            raise ValueError("missing field `header`")
        return cls(header=ShareHeader._from_dict(decoded["header"]))


def build_share_header(workbase, share: MinerShare, userworkbase, miner_pubkey: str) -> ShareHeader:
    """Build a share header; previous hash and uncles are left for the chain to set."""
    coinbase = build_coinbase_from_share(userworkbase, share)
    txids = [coinbase.txid(), *decode_txids(workbase.txns)]
    merkle_root = compute_merkle_root_from_txids(txids)
    if merkle_root is None:
        raise ValueError("Failed to compute merkle root")
    return ShareHeader(
        miner_share=dataclasses.replace(share),
        miner_pubkey=miner_pubkey,
        merkle_root=merkle_root,
    )


def build_share_block(workbase, userworkbase, share: MinerShare, header: ShareHeader) -> ShareBlock:
    """Build a share block with the coinbase and the workbase's transactions."""
    coinbase = build_coinbase_from_share(userworkbase, share)
    transactions = [coinbase, *decode_transactions(workbase.txns)]
    return ShareBlockBuilder(header).with_transactions(transactions).build()