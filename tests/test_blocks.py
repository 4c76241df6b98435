from decimal import Decimal

import pytest

from p2pool.blocks import (
    ShareBlock,
    ShareBlockBuilder,
    ShareBlockHash,
    ShareHeader,
    StorageShareBlock,
    build_share_block,
    build_share_header,
)
from p2pool.builders import decode_transaction
from p2pool.genesis import Network, genesis_data
from p2pool.miner_message import (
    Gbt,
    MinerShare,
    MinerWorkbase,
    UserWorkbase,
    UserWorkbaseParams,
)

PUBKEY = "020202020202020202020202020202020202020202020202020202020202020202"
GENESIS_PUBKEY = "02ac493f2130ca56cb5c3a559860cef9a84f90b5a85dfe4ec6e6067eeee17f4d2d"
HASH_B5 = "0000000086704a35f17580d06f76d4c02d2b1f68774800675fb45f0411205bb5"
HASH_B4 = "0000000086704a35f17580d06f76d4c02d2b1f68774800675fb45f0411205bb4"
COINBASE_TXID = "186d34fc6257b8f327e41abe5ec5ee29022af3772b1233b5eb152a85e23aad04"
COINBASE_HEX = (
    "010000000001010000000000000000000000000000000000000000000000000000000000000000"
    "ffffffff2c017b000438f9b667049c0fc52d0cfdf8b66700000000000000000a636b706f6f6c0a"
    "2f7032706f6f6c76322fffffffff0300111024010000001600148f1b6f0d5a0422afad259ec039"
    "77bdf2c74a037600e1f50500000000160014a248cf2f99f449511b22bab1a3d001719f84cd0900"
    "00000000000000266a24aa21a9ede2f61c3f71d1defd3fa999dfa36953755c690689799962b48b"
    "ebd836974e8cf90120000000000000000000000000000000000000000000000000000000000000"
    "000000000000"
)
COINB1 = (
    "01000000010000000000000000000000000000000000000000000000000000000000000000ffff"
    "ffff2c017b000438f9b667049c0fc52d0c"
)
COINB2 = (
    "0a636b706f6f6c0a2f7032706f6f6c76322fffffffff0300111024010000001600148f1b6f0d5a"
    "0422afad259ec03977bdf2c74a037600e1f50500000000160014a248cf2f99f449511b22bab1a3"
    "d001719f84cd090000000000000000266a24aa21a9ede2f61c3f71d1defd3fa999dfa36953755c"
    "690689799962b48bebd836974e8cf900000000"
)


def coinbase():
    return decode_transaction(bytes.fromhex(COINBASE_HEX))


def miner_share(blockhash=HASH_B5, workinfoid=7452731920372203525, diff="1.0"):
    return MinerShare(
        workinfoid=workinfoid,
        clientid=1,
        enonce1="336c6d67",
        nonce2="0000000000000000",
        nonce="2eb7b82b",
        ntime=0x676D6CAA,
        diff=Decimal(diff),
        sdiff=Decimal("1.9041854952356509"),
        hash=blockhash,
        username="tb1q3udk7r26qs32ltf9nmqrjaaa7tr55qmkk30q5d",
    )


def make_block(blockhash=HASH_B5, prev=None, uncles=()):
    block = ShareBlock.new(miner_share(blockhash), PUBKEY, [coinbase()])
    block.header.prev_share_blockhash = None if prev is None else ShareBlockHash(prev)
    block.header.uncles = [ShareBlockHash(u) for u in uncles]
    block.compute_blockhash()
    return block


def user_workbase():
    params = UserWorkbaseParams(
        id="67b6f8fc00000003",
        prevhash="6d600f568f665af26301fcafa53326454b9db355ff5d87f9863a956300000000",
        coinb1=COINB1,
        coinb2=COINB2,
        merkles=[],
        version="20000000",
        nbit="1e0377ae",
        ntime="67b6f938",
        clean_jobs=False,
    )
    return UserWorkbase(params=params, id=None, workinfoid=7473434392883363843)


def workbase():
    gbt = Gbt.from_dict(
        {
            "capabilities": ["proposal"],
            "version": 536870912,
            "rules": [],
            "vbavailable": None,
            "vbrequired": 0,
            "previousblockhash": "00000000863a9563ff5d87f94b9db355a53326456301fcaf8f665af26d600f56",
            "transactions": [],
            "coinbaseaux": None,
            "coinbasevalue": 5000000000,
            "longpollid": "longpoll",
            "target": "target",
            "mintime": 1,
            "mutable": ["time"],
            "noncerange": "00000000ffffffff",
            "sigoplimit": 80000,
            "sizelimit": 4000000,
            "weightlimit": 4000000,
            "curtime": 1740044600,
            "bits": "1e0377ae",
            "height": 123,
            "signet_challenge": "51",
            "default_witness_commitment": "commitment",
            "diff": 1.0,
            "ntime": "67b6f938",
            "bbversion": "20000000",
            "nbit": "1e0377ae",
        }
    )
    return MinerWorkbase(
        workinfoid=7473434392883363843,
        gbt=gbt,
        txns=[],
        merkles=[],
        coinb1="01",
        coinb2="02",
        coinb3="03",
        header="01",
    )


def genesis_share():
    return MinerShare.genesis(genesis_data(Network.SIGNET))


def test_build_genesis_share_header():
    share = ShareBlock.build_genesis(genesis_data(Network.SIGNET), GENESIS_PUBKEY, coinbase())
    ms = share.header.miner_share
    assert ms.workinfoid == 0
    assert ms.clientid == 0
    assert ms.enonce1 == "fdf8b667"
    assert ms.nonce2 == "0000000000000000"
    assert ms.nonce == "f15f1590"
    assert ms.ntime == 1740044600
    assert ms.diff == Decimal("1.0")
    assert ms.sdiff == Decimal("31.465847594928551")
    assert ms.hash == "000000000822bbfaf34d53fc43d0c1382054d3aafe31893020c315db8b0a19f9"
    assert share.header.uncles == []
    assert share.header.prev_share_blockhash is None
    assert share.header.miner_pubkey == GENESIS_PUBKEY
    assert len(share.transactions) == 1
    assert share.transactions[0].is_coinbase()
    assert share.header.merkle_root == COINBASE_TXID
    assert share.cached_blockhash == share.compute_blockhash()


def test_share_header_genesis_uses_given_merkle_root():
    header = ShareHeader.genesis(genesis_data(Network.SIGNET), GENESIS_PUBKEY, COINBASE_TXID)
    assert header.merkle_root == COINBASE_TXID
    assert header.miner_share == genesis_share()


def test_share_serialization():
    share = make_block(prev=HASH_B4)
    storage = StorageShareBlock.from_share_block(share)
    restored = StorageShareBlock.cbor_deserialize(storage.cbor_serialize()).header
    original = share.header
    assert restored.prev_share_blockhash == original.prev_share_blockhash
    assert restored.uncles == original.uncles
    assert restored.miner_pubkey == original.miner_pubkey
    assert restored.merkle_root == original.merkle_root
    for name in ("workinfoid", "clientid", "enonce1", "nonce2", "nonce", "ntime",
                 "diff", "sdiff", "username", "hash"):
        assert getattr(restored.miner_share, name) == getattr(original.miner_share, name)


def test_transactions_survive_serialization():
    tx = coinbase()
    assert decode_transaction(tx.serialize()) == tx
    assert tx.serialize().hex() == COINBASE_HEX


def test_share_block_new_includes_coinbase_transaction():
    share = ShareBlock.new(miner_share(), PUBKEY, [coinbase()])
    assert share.transactions[0].is_coinbase()
    assert len(share.transactions[0].outputs) == 3
    assert len(share.transactions[0].inputs) == 1
    assert share.header.merkle_root == COINBASE_TXID
    assert share.header.prev_share_blockhash is None


def test_share_block_new_without_transactions_fails():
    with pytest.raises(ValueError):
        ShareBlock.new(miner_share(), PUBKEY, [])


def test_storage_share_block_conversion():
    share = make_block(prev=HASH_B4)
    storage = StorageShareBlock.from_share_block(share)
    assert storage.header == share.header

    recovered = storage.into_share_block()
    assert recovered.header == share.header
    assert recovered.transactions == []

    recovered = storage.into_share_block_with_transactions(list(share.transactions))
    assert recovered == share


def test_cbor_deserialize_rejects_garbage():
    with pytest.raises(ValueError):
        StorageShareBlock.cbor_deserialize(b"\xff\x00garbage")


def test_share_block_hash_partial_eq():
    hash1 = ShareBlockHash(HASH_B5)
    hash2 = ShareBlockHash(HASH_B5)
    hash3 = ShareBlockHash(HASH_B4)
    assert hash1 == hash2
    assert not hash1 == hash3
    assert hash1 == HASH_B5
    assert not hash1 == HASH_B4
    assert HASH_B5 == hash1
    assert not HASH_B4 == hash1


def test_share_block_hash_in_collections():
    hash1 = ShareBlockHash(HASH_B5)
    hash2 = ShareBlockHash(HASH_B4)
    hash3 = ShareBlockHash(HASH_B5)
    hash_set = {hash1, hash2, hash3}
    assert len(hash_set) == 2
    assert hash1 in hash_set
    assert hash3 in hash_set
    assert hash2 in hash_set


def test_share_block_hash_display():
    assert str(ShareBlockHash(HASH_B5)) == HASH_B5
    assert f"{ShareBlockHash(HASH_B5.upper())}" == HASH_B5


def test_share_block_hash_bytes_round_trip():
    value = ShareBlockHash("00" * 31 + "01")
    assert value.as_bytes() == b"\x01" + bytes(31)
    assert ShareBlockHash.from_bytes(value.as_bytes()) == value


def test_share_block_hash_rejects_bad_input():
    with pytest.raises(ValueError):
        ShareBlockHash("not a hash")


def test_invalid_pubkey_rejected():
    with pytest.raises(ValueError):
        ShareBlock.new(miner_share(), "05" + "02" * 32, [coinbase()])


def test_blockhash_depends_on_prev_and_uncles():
    base = make_block()
    with_prev = make_block(prev=HASH_B4)
    with_uncle = make_block(prev=HASH_B4, uncles=[HASH_B5])
    assert len({base.cached_blockhash, with_prev.cached_blockhash, with_uncle.cached_blockhash}) == 3
    assert make_block(prev=HASH_B4).cached_blockhash == with_prev.cached_blockhash


def test_builder_computes_hash():
    header = make_block().header
    block = ShareBlockBuilder(header).with_transactions([coinbase()]).build()
    assert block.cached_blockhash == make_block().cached_blockhash


def test_build_share_header_and_block():
    share = genesis_share()
    header = build_share_header(workbase(), share, user_workbase(), PUBKEY)
    assert header.merkle_root == COINBASE_TXID
    assert header.prev_share_blockhash is None
    assert header.uncles == []
    assert header.miner_share == share

    block = build_share_block(workbase(), user_workbase(), share, header)
    assert len(block.transactions) == 1
    assert block.transactions[0].is_coinbase()
    assert block.transactions[0].txid() == COINBASE_TXID
    assert block.cached_blockhash == block.compute_blockhash()