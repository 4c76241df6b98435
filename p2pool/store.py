"""In-memory storage for share blocks, their heights and ckpool workbases."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Union

from p2pool.blocks import ShareBlock, ShareBlockHash, ShareHeader
from p2pool.miner_message import MinerWorkbase, UserWorkbase

HashLike = Union[str, ShareBlockHash]


@dataclass(frozen=True)
class BlockMetadata:
    """What the store records about a share block besides the block itself."""

    height: Optional[int]


class ShareStore:
    """Keeps share blocks indexed by hash and height, plus workbases by workinfoid."""

    def __init__(self) -> None:
        self._shares: dict[ShareBlockHash, ShareBlock] = {}
        self._metadata: dict[ShareBlockHash, BlockMetadata] = {}
        self._heights: dict[int, list[ShareBlockHash]] = {}
        self._workbases: dict[int, MinerWorkbase] = {}
        self._user_workbases: dict[int, UserWorkbase] = {}

    def add_share(self, share: ShareBlock, height: Optional[int]) -> None:
        """Store ``share`` and record it at ``height``."""
        blockhash = share.cached_blockhash or share.compute_blockhash()
        self._shares[blockhash] = share
        self._metadata[blockhash] = BlockMetadata(height=height)
        if height is not None:
            at_height = self._heights.setdefault(height, [])
            if blockhash not in at_height:
                at_height.append(blockhash)

    def get_block_metadata(self, blockhash: HashLike) -> Optional[BlockMetadata]:
        """Return the metadata of a stored block, or None."""
        return self._metadata.get(ShareBlockHash(blockhash))

    def get_share(self, blockhash: HashLike) -> Optional[ShareBlock]:
        """Return a stored share block, or None."""
        return self._shares.get(ShareBlockHash(blockhash))

    def get_blockhashes_for_height(self, height: int) -> list[ShareBlockHash]:
        """Return the hashes stored at ``height`` in the order they were added."""
        return list(self._heights.get(height, []))

    def get_shares_at_height(self, height: int) -> dict[ShareBlockHash, ShareBlock]:
        """Return the share blocks stored at ``height`` keyed by hash."""
        return {blockhash: self._shares[blockhash] for blockhash in self._heights.get(height, [])}

    def get_share_headers(self, blockhashes: Iterable[HashLike]) -> list[ShareHeader]:
        """Return the headers of the stored blocks among ``blockhashes``, in order."""
        found = (self._shares.get(ShareBlockHash(h)) for h in blockhashes)
        return [share.header for share in found if share is not None]

    def get_chain_upto(self, blockhash: HashLike) -> list[ShareBlock]:
        """Return the block and its stored ancestors, newest first; empty if unknown."""
        chain: list[ShareBlock] = []
        seen: set[ShareBlockHash] = set()
        current: Optional[ShareBlockHash] = ShareBlockHash(blockhash)
        while current is not None and current not in seen:
            share = self._shares.get(current)
            if share is None:
                break
            seen.add(current)
            chain.append(share)
            current = share.header.prev_share_blockhash
        return chain

    def _locator_range(
        self, locator: Iterable[HashLike], stop_block_hash: HashLike, limit: int
    ) -> list[ShareBlock]:
        chain = list(reversed(self.get_chain_upto(stop_block_hash)))
        if not chain:
            return []
        hashes = [share.cached_blockhash for share in chain]
        start = next(
            (h for h in map(ShareBlockHash, locator) if h in self._shares),
            None,
        )
        if start is not None and start in hashes:
            selected = chain[hashes.index(start) + 1:]
        else:
            selected = chain[:1]
        return selected[: max(limit, 0)]

    def get_headers_for_locator(
        self, locator: Iterable[HashLike], stop_block_hash: HashLike, limit: int
    ) -> list[ShareHeader]:
        """Return headers after the first known locator hash up to the stop hash.

        When no locator hash is known, only the genesis header of the stop
        block's chain is returned.
        """
        return [share.header for share in self._locator_range(locator, stop_block_hash, limit)]

    def get_blockhashes_for_locator(
        self, locator: Iterable[HashLike], stop_block_hash: HashLike, limit: int
    ) -> list[ShareBlockHash]:
        """Return block hashes selected the same way as the locator headers."""
        return [
            share.cached_blockhash
            for share in self._locator_range(locator, stop_block_hash, limit)
        ]

    def get_missing_blockhashes(self, blockhashes: Iterable[HashLike]) -> list[ShareBlockHash]:
        """Return the hashes among ``blockhashes`` that are not stored, in order."""
        return [h for h in map(ShareBlockHash, blockhashes) if h not in self._shares]

    def add_workbase(self, workbase: MinerWorkbase) -> None:
        """Store a workbase under its workinfoid."""
        self._workbases[workbase.workinfoid] = workbase

    def add_user_workbase(self, user_workbase: UserWorkbase) -> None:
        """Store a user workbase under its workinfoid."""
        self._user_workbases[user_workbase.workinfoid] = user_workbase

    def get_workbase(self, workinfoid: int) -> Optional[MinerWorkbase]:
        """Return the workbase with ``workinfoid``, or None."""
        return self._workbases.get(workinfoid)

    def get_workbases(self, workinfoids: Iterable[int]) -> list[MinerWorkbase]:
        """Return the stored workbases among ``workinfoids``, in order."""
        return [self._workbases[i] for i in workinfoids if i in self._workbases]

    def get_user_workbase(self, workinfoid: int) -> Optional[UserWorkbase]:
        """Return the user workbase with ``workinfoid``, or None."""
        return self._user_workbases.get(workinfoid)

    def get_user_workbases(self, workinfoids: Iterable[int]) -> list[UserWorkbase]:
        """Return the stored user workbases among ``workinfoids``, in order."""
        return [self._user_workbases[i] for i in workinfoids if i in self._user_workbases]