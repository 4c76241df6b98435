"""Shares, workbases and user workbases as published by ckpool."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

from p2pool.builders import (
    build_bitcoin_block,
    build_bitcoin_header,
    build_coinbase_from_share,
    compact_to_target,
    compute_merkle_root_from_txids,
    decode_txids,
)
from p2pool.genesis import GenesisData

_LOCK_TIME_THRESHOLD = 500_000_000
_U32_MAX = 0xFFFFFFFF
_U64_MAX = (1 << 64) - 1
_I32_MIN = -(1 << 31)
_I32_MAX = (1 << 31) - 1
_HEX = frozenset("0123456789abcdefABCDEF")


def _field(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field `{key}`") from None
    except TypeError:
        raise ValueError(f"expected an object holding `{key}`") from None


def _int(value: Any, name: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name}: expected an integer, got {value!r}")
    if not low <= value <= high:
        raise ValueError(f"{name}: {value} is out of range")
    return value


def _str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name}: expected a string, got {value!r}")
    return value


def _str_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list):
        raise ValueError(f"{name}: expected a list, got {value!r}")
    return [_str(item, name) for item in value]


def _bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    return value


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{name}: expected a number, got {value!r}")
    if isinstance(value, float):
        value = repr(value)
    if not isinstance(value, (str, int, Decimal)):
        raise ValueError(f"{name}: expected a number, got {value!r}")
    try:
        result = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"{name}: invalid decimal {value!r}") from None
    if not result.is_finite():
        raise ValueError(f"{name}: invalid decimal {value!r}")
    return result


def _float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError(f"{name}: expected a number, got {value!r}")
    return float(value)


def _blockhash(value: Any, name: str) -> str:
    text = _str(value, name)
    if len(text) != 64 or not set(text) <= _HEX:
        raise ValueError(f"{name}: invalid block hash {text!r}")
    return text.lower()


def _check_time(value: int, name: str) -> int:
    _int(value, name, 0, _U32_MAX)
    if value < _LOCK_TIME_THRESHOLD:
        raise ValueError(f"{name}: {value} is not a valid block time")
    return value


def _time_from_hex(value: Any, name: str) -> int:
    text = _str(value, name)
    if not text or not set(text) <= _HEX:
        raise ValueError(f"{name}: invalid hex time {text!r}")
    return _check_time(int(text, 16), name)


def _time_to_hex(value: int) -> str:
    return f"{value:08x}"


@dataclass
class WorkbaseTxn:
    """A transaction of a workbase, as txid and raw hex data."""

    txid: str
    data: str

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> "WorkbaseTxn":
        return cls(
            txid=_str(_field(data, "txid"), "txid"),
            data=_str(_field(data, "data"), "data"),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {"txid": self.txid, "data": self.data}


@dataclass
class WorkbaseMerkleItem:
    """One merkle branch entry of a workbase."""

    merkle: str

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> "WorkbaseMerkleItem":
        return cls(merkle=_str(_field(data, "merkle"), "merkle"))

    def _to_dict(self) -> dict[str, Any]:
        return {"merkle": self.merkle}


@dataclass
class Gbt:
    """The getblocktemplate result ckpool uses as a workbase."""

    capabilities: list[str]
    version: int
    rules: list[str]
    vbavailable: Any
    vbrequired: int
    previousblockhash: str
    transactions: list[Any]
    coinbaseaux: Any
    coinbasevalue: int
    longpollid: str
    target: str
    mintime: int
    mutable: list[str]
    noncerange: str
    sigoplimit: int
    sizelimit: int
    weightlimit: int
    curtime: int
    bits: str
    height: int
    signet_challenge: str
    default_witness_commitment: str
    diff: float
    ntime: int
    bbversion: str
    nbit: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Gbt":
        """Build from a JSON object; raise ValueError on missing or bad fields."""
        transactions = _field(data, "transactions")
        if not isinstance(transactions, list):
            raise ValueError("transactions: expected a list")

        def u32(key: str) -> int:
            return _int(_field(data, key), key, 0, _U32_MAX)

        def u64(key: str) -> int:
            return _int(_field(data, key), key, 0, _U64_MAX)

        def text(key: str) -> str:
            return _str(_field(data, key), key)

        return cls(
            capabilities=_str_list(_field(data, "capabilities"), "capabilities"),
            version=_int(_field(data, "version"), "version", _I32_MIN, _I32_MAX),
            rules=_str_list(_field(data, "rules"), "rules"),
            vbavailable=data.get("vbavailable"),
            vbrequired=u32("vbrequired"),
            previousblockhash=text("previousblockhash"),
            transactions=list(transactions),
            coinbaseaux=data.get("coinbaseaux"),
            coinbasevalue=u64("coinbasevalue"),
            longpollid=text("longpollid"),
            target=text("target"),
            mintime=u64("mintime"),
            mutable=_str_list(_field(data, "mutable"), "mutable"),
            noncerange=text("noncerange"),
            sigoplimit=u32("sigoplimit"),
            sizelimit=u32("sizelimit"),
            weightlimit=u32("weightlimit"),
            curtime=_check_time(_field(data, "curtime"), "curtime"),
            bits=text("bits"),
            height=u32("height"),
            signet_challenge=text("signet_challenge"),
            default_witness_commitment=text("default_witness_commitment"),
            diff=_float(_field(data, "diff"), "diff"),
            ntime=_time_from_hex(_field(data, "ntime"), "ntime"),
            bbversion=text("bbversion"),
            nbit=text("nbit"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form."""
        return {
            "capabilities": list(self.capabilities),
            "version": self.version,
            "rules": list(self.rules),
            "vbavailable": self.vbavailable,
            "vbrequired": self.vbrequired,
            "previousblockhash": self.previousblockhash,
            "transactions": list(self.transactions),
            "coinbaseaux": self.coinbaseaux,
            "coinbasevalue": self.coinbasevalue,
            "longpollid": self.longpollid,
            "target": self.target,
            "mintime": self.mintime,
            "mutable": list(self.mutable),
            "noncerange": self.noncerange,
            "sigoplimit": self.sigoplimit,
            "sizelimit": self.sizelimit,
            "weightlimit": self.weightlimit,
            "curtime": self.curtime,
            "bits": self.bits,
            "height": self.height,
            "signet_challenge": self.signet_challenge,
            "default_witness_commitment": self.default_witness_commitment,
            "diff": self.diff,
            "ntime": _time_to_hex(self.ntime),
            "bbversion": self.bbversion,
            "nbit": self.nbit,
        }


@dataclass
class MinerWorkbase:
    """A workbase as used by ckpool."""

    workinfoid: int
    gbt: Gbt
    txns: list[WorkbaseTxn]
    merkles: list[WorkbaseMerkleItem]
    coinb1: str
    coinb2: str
    coinb3: str
    header: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MinerWorkbase":
        """Build from a JSON object; raise ValueError on missing or bad fields."""
        txns = _field(data, "txns")
        merkles = _field(data, "merkles")
        if not isinstance(txns, list) or not isinstance(merkles, list):
            raise ValueError("txns and merkles must be lists")
        return cls(
            workinfoid=_int(_field(data, "workinfoid"), "workinfoid", 0, _U64_MAX),
            gbt=Gbt.from_dict(_field(data, "gbt")),
            txns=[WorkbaseTxn._from_dict(item) for item in txns],
            merkles=[WorkbaseMerkleItem._from_dict(item) for item in merkles],
            coinb1=_str(_field(data, "coinb1"), "coinb1"),
            coinb2=_str(_field(data, "coinb2"), "coinb2"),
            coinb3=_str(_field(data, "coinb3"), "coinb3"),
            header=_str(_field(data, "header"), "header"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form."""
        return {
            "workinfoid": self.workinfoid,
            "gbt": self.gbt.to_dict(),
            "txns": [txn._to_dict() for txn in self.txns],
            "merkles": [item._to_dict() for item in self.merkles],
            "coinb1": self.coinb1,
            "coinb2": self.coinb2,
            "coinb3": self.coinb3,
            "header": self.header,
        }


@dataclass
class UserWorkbaseParams:
    """Stratum mining.notify parameters; encoded as a nine-element list."""

    id: str
    prevhash: str
    coinb1: str
    coinb2: str
    merkles: list[str]
    version: str
    nbit: str
    ntime: str
    clean_jobs: bool

    @classmethod
    def from_list(cls, data: Any) -> "UserWorkbaseParams":
        """Build from the nine-element list form."""
        if not isinstance(data, (list, tuple)) or len(data) != 9:
            raise ValueError("params: expected a list of 9 elements")
        id_, prevhash, coinb1, coinb2, merkles, version, nbit, ntime, clean_jobs = data
        return cls(
            id=_str(id_, "id"),
            prevhash=_str(prevhash, "prevhash"),
            coinb1=_str(coinb1, "coinb1"),
            coinb2=_str(coinb2, "coinb2"),
            merkles=_str_list(merkles, "merkles"),
            version=_str(version, "version"),
            nbit=_str(nbit, "nbit"),
            ntime=_str(ntime, "ntime"),
            clean_jobs=_bool(clean_jobs, "clean_jobs"),
        )

    def to_list(self) -> list[Any]:
        """Return the nine-element list form."""
        return [
            self.id,
            self.prevhash,
            self.coinb1,
            self.coinb2,
            list(self.merkles),
            self.version,
            self.nbit,
            self.ntime,
            self.clean_jobs,
        ]


@dataclass
class UserWorkbase:
    """The per-user work notification ckpool sends to a miner."""

    params: UserWorkbaseParams
    id: Optional[str]
    workinfoid: int
    method: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserWorkbase":
        """Build from a JSON object; ``method`` is not read."""
        raw_id = data.get("id") if isinstance(data, Mapping) else None
        return cls(
            params=UserWorkbaseParams.from_list(_field(data, "params")),
            id=None if raw_id is None else _str(raw_id, "id"),
            workinfoid=_int(_field(data, "workinfoid"), "workinfoid", 0, _U64_MAX),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form; ``method`` is not written."""
        return {
            "params": self.params.to_list(),
            "id": self.id,
            "workinfoid": self.workinfoid,
        }


@dataclass
class MinerShare:
    """Work done by a miner as sent by ckpool; ``ntime`` is in seconds."""

    workinfoid: int
    clientid: int
    enonce1: str
    nonce2: str
    nonce: str
    ntime: int
    diff: Decimal
    sdiff: Decimal
    hash: str
    username: str = ""
    result: bool = False
    errn: int = 0
    createdate: str = ""
    createby: str = ""
    createcode: str = ""
    createinet: str = ""
    workername: str = ""
    address: str = ""
    agent: str = ""

    @classmethod
    def genesis(cls, genesis_data: GenesisData) -> "MinerShare":
        """Build the genesis share from a network's genesis data."""
        return cls(
            workinfoid=genesis_data.workinfoid,
            clientid=genesis_data.clientid,
            enonce1=genesis_data.enonce1,
            nonce2=genesis_data.nonce2,
            nonce=genesis_data.nonce,
            ntime=_check_time(genesis_data.ntime, "ntime"),
            diff=genesis_data.diff,
            sdiff=genesis_data.sdiff,
            hash=_blockhash(genesis_data.bitcoin_blockhash, "hash"),
            result=True,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MinerShare":
        """Build from a JSON object; ckpool-only bookkeeping fields are not read."""
        return cls(
            workinfoid=_int(_field(data, "workinfoid"), "workinfoid", 0, _U64_MAX),
            clientid=_int(_field(data, "clientid"), "clientid", 0, _U64_MAX),
            enonce1=_str(_field(data, "enonce1"), "enonce1"),
            nonce2=_str(_field(data, "nonce2"), "nonce2"),
            nonce=_str(_field(data, "nonce"), "nonce"),
            ntime=_time_from_hex(_field(data, "ntime"), "ntime"),
            diff=_decimal(_field(data, "diff"), "diff"),
            sdiff=_decimal(_field(data, "sdiff"), "sdiff"),
            hash=_blockhash(_field(data, "hash"), "hash"),
            username=_str(_field(data, "username"), "username"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form; decimals are written as strings."""
        return {
            "workinfoid": self.workinfoid,
            "clientid": self.clientid,
            "enonce1": self.enonce1,
            "nonce2": self.nonce2,
            "nonce": self.nonce,
            "ntime": _time_to_hex(self.ntime),
            "diff": str(self.diff),
            "sdiff": str(self.sdiff),
            "hash": self.hash,
            "username": self.username,
        }

    def validate(self, workbase: MinerWorkbase, user_workbase: UserWorkbase) -> bool:
        """Check proof of work, merkle root and witness commitment.

        Returns True; raises ValueError describing the first failure.
        """
        try:
            coinbase = build_coinbase_from_share(user_workbase, self)
        except ValueError as err:
            raise ValueError(f"Failed to build coinbase: {err}") from err
        try:
            txids = decode_txids(workbase.txns)
        except ValueError as err:
            raise ValueError(f"Failed to parse txid: {err}") from err

        merkle_root = compute_merkle_root_from_txids([coinbase.txid(), *txids])
        if merkle_root is None:
            raise ValueError("Failed to compute merkle root")
        try:
            header = build_bitcoin_header(workbase, self, merkle_root)
        except ValueError as err:
            raise ValueError(f"Failed to build header: {err}") from err
        try:
            block = build_bitcoin_block(workbase, user_workbase, self)
        except ValueError as err:
            raise ValueError(f"Failed to build block: {err}") from err

        required_target = compact_to_target(int(user_workbase.params.nbit, 16))
        try:
            header.validate_pow(required_target)
        except ValueError:
            raise ValueError("Invalid proof of work") from None
        if not block.check_merkle_root():
            raise ValueError("Invalid merkle root")
        if not block.check_witness_commitment():
            raise ValueError("Invalid witness commitment")
        return True


CkPoolMessage = Union[MinerShare, MinerWorkbase, UserWorkbase]

_MESSAGE_TYPES = {
    "Share": MinerShare,
    "Workbase": MinerWorkbase,
    "UserWorkbase": UserWorkbase,
}


def parse_ckpool_message(data: Union[str, bytes, Mapping[str, Any]]) -> CkPoolMessage:
    """Parse a tagged ckpool message, given as JSON text or an already decoded object."""
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data, parse_float=Decimal)
        except json.JSONDecodeError as err:
            raise ValueError(f"invalid JSON: {err}") from err
    if not isinstance(data, Mapping) or len(data) != 1:
        raise ValueError("expected an object with exactly one message tag")
    ((tag, body),) = data.items()
    try:
        message_type = _MESSAGE_TYPES[tag]
    except KeyError:
        raise ValueError(f"unknown message variant `{tag}`") from None
    if not isinstance(body, Mapping):
        raise ValueError(f"{tag}: expected an object")
    return message_type.from_dict(body)


def dump_ckpool_message(message: CkPoolMessage) -> dict[str, Any]:
    """Return the tagged JSON object form of a ckpool message."""
    for tag, message_type in _MESSAGE_TYPES.items():
        if isinstance(message, message_type):
            return {tag: message.to_dict()}
    raise TypeError(f"not a ckpool message: {type(message).__name__}")