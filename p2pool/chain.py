"""The share chain: tips, chain tip, total difficulty and reorgs."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional, Union

from p2pool.blocks import ShareBlock, ShareBlockHash, ShareHeader
from p2pool.miner_message import MinerWorkbase, UserWorkbase
from p2pool.store import ShareStore

logger = logging.getLogger(__name__)

HashLike = Union[str, ShareBlockHash]

MIN_CONFIRMATION_DEPTH = 100
"""Shares that must precede a share on the chain for it to count as confirmed."""

_LOCATOR_DENSE_ENTRIES = 10


class ChainError(Exception):
    """Raised when the share chain cannot complete an operation."""


class Chain:
    """The main share chain; it reorgs to any share with higher total difficulty."""

    def __init__(self, store: Optional[ShareStore] = None) -> None:
        self.store = store if store is not None else ShareStore()
        self.genesis_block_hash: Optional[ShareBlockHash] = None
        self.chain_tip: Optional[ShareBlockHash] = None
        self.tips: set[ShareBlockHash] = set()
        self.total_difficulty = Decimal("0.0")

    def add_share(self, share: ShareBlock) -> None:
        """Store ``share``, update the tips and reorg if it extends the heaviest chain."""
        logger.info("Adding share to chain: %r", share.cached_blockhash)
        blockhash = share.cached_blockhash or share.compute_blockhash()
        if not self.tips:
            self.genesis_block_hash = blockhash
        prev = share.header.prev_share_blockhash
        share_difficulty = share.header.miner_share.diff

        prev_height = self._height_for_prevhash(prev)
        height = 0 if prev_height is None else prev_height + 1
        logger.debug("Adding share to store: %s at height: %d", blockhash, height)
        self.store.add_share(share, height)

        if not self.tips:
            logger.info("New chain: %s", blockhash)
            self.tips.add(blockhash)
            self.total_difficulty = share_difficulty
            self.chain_tip = blockhash
            return

        if prev is not None:
            self.tips.discard(prev)
        for uncle in share.header.uncles:
            self.tips.discard(uncle)
        self.tips.add(blockhash)

        if prev is not None:
            logger.info("Checking for reorgs at share: %s", prev)
            difficulty_upto_prev = sum(
                (block.header.miner_share.diff for block in self.store.get_chain_upto(prev)),
                Decimal(0),
            )
            if difficulty_upto_prev + share_difficulty > self.total_difficulty:
                self.reorg(share, difficulty_upto_prev)

    def _height_for_prevhash(self, prev: Optional[ShareBlockHash]) -> Optional[int]:
        if prev is None:
            return None
        metadata = self.store.get_block_metadata(prev)
        return None if metadata is None else metadata.height

    def remove_from_tips(self, blockhash: HashLike) -> None:
        """Remove a hash from the tips; no-op when absent."""
        self.tips.discard(ShareBlockHash(blockhash))

    def add_to_tips(self, blockhash: HashLike) -> None:
        """Add a hash to the tips; no-op when present."""
        self.tips.add(ShareBlockHash(blockhash))

    def reorg(self, share: ShareBlock, total_difficulty_upto_prev_share_blockhash: Decimal) -> None:
        """Make ``share`` the chain tip and set the total difficulty accordingly."""
        blockhash = share.cached_blockhash or share.compute_blockhash()
        logger.info("Reorging chain to share: %s", blockhash)
        self.total_difficulty = (
            total_difficulty_upto_prev_share_blockhash + share.header.miner_share.diff
        )
        self.chain_tip = blockhash

    def is_confirmed(self, share: ShareBlock) -> bool:
        """True for genesis shares or shares with enough stored ancestors."""
        prev = share.header.prev_share_blockhash
        if prev is None:
            return True
        return len(self.store.get_chain_upto(prev)) > MIN_CONFIRMATION_DEPTH

    def add_workbase(self, workbase: MinerWorkbase) -> None:
        """Store a workbase; raise ChainError when it cannot be stored."""
        try:
            self.store.add_workbase(workbase)
        except (AttributeError, TypeError, ValueError) as err:
            logger.error("Failed to add workbase to store: %s", err)
            raise ChainError("Error adding workbase to store") from err

    def add_user_workbase(self, user_workbase: UserWorkbase) -> None:
        """Store a user workbase; raise ChainError when it cannot be stored."""
        try:
            self.store.add_user_workbase(user_workbase)
        except (AttributeError, TypeError, ValueError) as err:
            logger.error("Failed to add user workbase to store: %s", err)
            raise ChainError("Error adding user workbase to store") from err

    def get_share(self, share_hash: HashLike) -> Optional[ShareBlock]:
        return self.store.get_share(share_hash)

    def get_shares_at_height(self, height: int) -> dict[ShareBlockHash, ShareBlock]:
        return self.store.get_shares_at_height(height)

    def get_share_headers(self, share_hashes: Iterable[HashLike]) -> list[ShareHeader]:
        return self.store.get_share_headers(list(share_hashes))

    def get_headers_for_locator(
        self, block_hashes: Iterable[HashLike], stop_block_hash: HashLike, limit: int
    ) -> list[ShareHeader]:
        """Headers following the first known locator hash, up to the stop hash."""
        if self.chain_tip is None:
            return []
        return self.store.get_headers_for_locator(block_hashes, stop_block_hash, limit)

    def get_blockhashes_for_locator(
        self, locator: Iterable[HashLike], stop_block_hash: HashLike, max_blockhashes: int
    ) -> list[ShareBlockHash]:
        """Block hashes following the first known locator hash, up to the stop hash."""
        if self.chain_tip is None:
            return []
        return self.store.get_blockhashes_for_locator(locator, stop_block_hash, max_blockhashes)

    def get_tip_height(self) -> Optional[int]:
        """Height of the chain tip; raise ChainError if the tip is not stored."""
        if self.chain_tip is None:
            return None
        metadata = self.store.get_block_metadata(self.chain_tip)
        if metadata is None:
            raise ChainError("Failed to get metadata for chain tip")
        return metadata.height

    def build_locator(self) -> list[ShareBlockHash]:
        """Hashes from the tip back to genesis: ten dense heights, then doubling steps."""
        if self.chain_tip is None:
            return []
        tip_height = self.get_tip_height()
        if not tip_height:
            return []

        heights: list[int] = []
        step = 1
        height = tip_height
        while height > 0:
            if len(heights) >= _LOCATOR_DENSE_ENTRIES:
                step *= 2
            heights.append(height)
            height = max(height - step, 0)
        heights.append(0)

        return [h for height in heights for h in self.store.get_blockhashes_for_height(height)]

    def get_workbase(self, workinfoid: int) -> Optional[MinerWorkbase]:
        return self.store.get_workbase(workinfoid)

    def get_workbases(self, workinfoids: Iterable[int]) -> list[MinerWorkbase]:
        return self.store.get_workbases(workinfoids)

    def get_user_workbase(self, workinfoid: int) -> Optional[UserWorkbase]:
        return self.store.get_user_workbase(workinfoid)

    def get_user_workbases(self, workinfoids: Iterable[int]) -> list[UserWorkbase]:
        return self.store.get_user_workbases(workinfoids)

    def get_total_difficulty(self) -> Decimal:
        return self.total_difficulty

    def get_chain_tip_and_uncles(self) -> tuple[Optional[ShareBlockHash], set[ShareBlockHash]]:
        """The chain tip and every other tip, which are candidate uncles."""
        uncles = set(self.tips)
        if self.chain_tip is not None:
            uncles.discard(self.chain_tip)
        return self.chain_tip, uncles

    def get_missing_blockhashes(self, blockhashes: Iterable[HashLike]) -> list[ShareBlockHash]:
        """The hashes among ``blockhashes`` that are not on the chain."""
        return self.store.get_missing_blockhashes(blockhashes)

    def get_depth(self, blockhash: HashLike) -> Optional[int]:
        """0 for the chain tip, the stored chain length otherwise, None if unknown."""
        if self.chain_tip is None:
            return None
        target = ShareBlockHash(blockhash)
        if self.chain_tip == target:
            return 0
        chain = self.store.get_chain_upto(target)
        if not chain:
            return None
        return len(chain)