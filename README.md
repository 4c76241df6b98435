# p2pool

Core pieces of a peer-to-peer bitcoin mining pool that sits behind ckpool:

- `p2pool.genesis`: the hard-coded genesis share data per network
  (`Network`, `GenesisData`, `genesis_data`). Only `Network.SIGNET` is
  supported; other networks raise `ValueError`.
- `p2pool.miner_message`: the messages ckpool publishes (`MinerShare`,
  `MinerWorkbase`, `UserWorkbase`, `UserWorkbaseParams`, `Gbt`) with JSON
  conversion through `parse_ckpool_message` and `dump_ckpool_message`, and
  proof-of-work, merkle root and witness commitment checks with
  `MinerShare.validate`, which raises `ValueError` describing the first failure.
- `p2pool.builders`: minimal bitcoin transaction, header and block handling
  (`Transaction`, `TxIn`, `TxOut`, `BlockHeader`, `Block`,
  `decode_transaction`, `compact_to_target`), used to rebuild a coinbase and
  block from a share and its workbase (`build_coinbase_from_share`,
  `build_bitcoin_header`, `build_bitcoin_block`).
- `p2pool.blocks`: share-chain blocks (`ShareBlock`, `ShareHeader`,
  `ShareBlockHash`, `ShareBlockBuilder`) and their CBOR storage form
  (`StorageShareBlock`), plus `build_share_header` and `build_share_block`.
- `p2pool.store`: `ShareStore`, an in-memory store of share blocks indexed by
  hash and height, and of workbases by workinfoid.
- `p2pool.chain`: `Chain`, which tracks tips, the chain tip, total difficulty
  and reorgs, and answers depth, locator and missing-block queries.

## Installing

    pip install .

For the tests:

    pip install ".[test]"
    pytest

## Example

Parsing a share published by ckpool:

```python
from p2pool.miner_message import MinerShare, dump_ckpool_message, parse_ckpool_message

message = parse_ckpool_message(
    '{"Share": {"workinfoid": 1, "clientid": 1, "enonce1": "336c6d67",'
    ' "nonce2": "0000000000000000", "nonce": "2eb7b82b", "ntime": "676d6caa",'
    ' "diff": 1.0, "sdiff": 1.9041854952356509,'
    ' "hash": "0000000086704a35f17580d06f76d4c02d2b1f68774800675fb45f0411205bb5",'
    ' "username": "miner"}}'
)
assert isinstance(message, MinerShare)
print(message.diff, dump_ckpool_message(message))
```

Building the share chain:

```python
from p2pool.chain import Chain
from p2pool.store import ShareStore

chain = Chain(ShareStore())
# chain.add_share(share_block) for each ShareBlock
print(chain.get_total_difficulty(), chain.build_locator())
```

## What this package does not do

- It does not connect to ckpool or any other process: messages must be handed
  to `parse_ckpool_message` as JSON text or decoded objects by the caller.
- It has no persistent storage: `ShareStore` keeps everything in memory and
  loses it when the process exits.
- It does not talk to peers or gossip shares, and it has no command-line
  program or server.