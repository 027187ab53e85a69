# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from dual_difficulty import EPOCH_BLOCK_LENGTH, Block
from node_rpc import NodeRPC

log = logging.getLogger(__name__)

# How far back to look for the previous block of the same algorithm when
# measuring the last retarget.
RETARGET_LOOKBACK = 16


class ChainState:
    """Recent-block window and epoch state, kept in sync with the daemon.

    Readers get snapshots; the window is swapped wholesale on every sync.
    """

    def __init__(
        self,
        rpc: NodeRPC,
        window: int = 60,
        epoch_length: int = EPOCH_BLOCK_LENGTH,
        poll_interval: float = 5.0,
    ):
        self.rpc = rpc
        self.window = max(2, int(window))
        self.epoch_length = max(1, int(epoch_length))
        self.poll_interval = float(poll_interval)

        self.lock = threading.RLock()
        self._sync_lock = threading.Lock()

        self.blocks: List[Block] = []
        self.hashes: Dict[int, str] = {}
        self.height: int = -1
        self.last_adjustment_time: int = 0
        self.previous_retarget: float = 0.0
        self._epoch_start_height: int = -1

        self._listeners: List[Callable[[int], None]] = []
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    # ------------------ READERS ------------------

    def get_blocks(self) -> List[Block]:
        with self.lock:
            return list(self.blocks)

    def get_current_block_height(self) -> int:
        with self.lock:
            return self.height

    def get_last_difficulty_adjustment_time(self) -> int:
        with self.lock:
            return self.last_adjustment_time

    def get_previous_difficulty_retarget(self) -> float:
        with self.lock:
            return self.previous_retarget

    def on_new_block(self, fn: Callable[[int], None]) -> None:
        self._listeners.append(fn)

    # ------------------ SYNC ------------------

    def _load_block(self, height: int, block_hash: Optional[str] = None) -> Tuple[str, Block]:
        if block_hash is None:
            block_hash = self.rpc.get_block_hash(height)
        header = self.rpc.get_block_header(block_hash)
        return block_hash, Block.from_header(header)

    def _measure_retarget(self, epoch_start: int) -> Tuple[int, float]:
        """(epoch start time, % difficulty change at that boundary)."""
        _h, first = self._load_block(epoch_start)
        if epoch_start <= 0:
            return first.timestamp, 0.0

        lowest = max(0, epoch_start - RETARGET_LOOKBACK)
        for height in range(epoch_start - 1, lowest - 1, -1):
            _h, prev = self._load_block(height)
            if prev.version == first.version:
                if prev.difficulty > 0:
                    return first.timestamp, (first.difficulty / prev.difficulty - 1.0) * 100.0
                break
        return first.timestamp, 0.0

    def sync(self) -> bool:
        """Pull new headers from the daemon. Returns True when the tip moved."""
        with self._sync_lock:
            tip = self.rpc.get_block_count()
            tip_hash = self.rpc.get_block_hash(tip)

            with self.lock:
                if tip == self.height and self.hashes.get(tip) == tip_hash:
                    return False
                blocks = list(self.blocks)
                hashes = dict(self.hashes)
                epoch_start_height = self._epoch_start_height

            if blocks:
                last = blocks[-1].height
                if last > tip:
                    reorg = True
                else:
                    current = tip_hash if last == tip else self.rpc.get_block_hash(last)
                    reorg = current != hashes.get(last)
                if reorg:
                    log.info("[SYNC] reorg detected at height=%d, rebuilding window", last)
                    blocks, hashes = [], {}
                    epoch_start_height = -1

            start = max(0, tip - self.window + 1)
            kept = [b for b in blocks if start <= b.height < tip]
            have = {b.height for b in kept}
            for height in range(start, tip):
                if height not in have:
                    block_hash, blk = self._load_block(height)
                    hashes[height] = block_hash
                    kept.append(blk)
            _h, tip_block = self._load_block(tip, tip_hash)
            hashes[tip] = tip_hash
            kept.append(tip_block)
            kept.sort(key=lambda b: b.height)
            hashes = {h: v for h, v in hashes.items() if h >= start}

            new_epoch_start = tip - (tip % self.epoch_length)
            epoch_state = None
            if new_epoch_start != epoch_start_height:
                epoch_state = self._measure_retarget(new_epoch_start)

            with self.lock:
                self.blocks = kept
                self.hashes = hashes
                self.height = tip
                if epoch_state is not None:
                    self._epoch_start_height = new_epoch_start
                    self.last_adjustment_time, self.previous_retarget = epoch_state
                    log.info(
                        "[SYNC] epoch start height=%d time=%d previous_retarget=%.2f%%",
                        new_epoch_start, self.last_adjustment_time, self.previous_retarget,
                    )

        log.debug("[SYNC] tip height=%d window=%d", tip, len(kept))
        for fn in list(self._listeners):
            try:
                fn(tip)
            except Exception as e:
                log.warning("[SYNC] new-block listener failed: %s", e)
        return True

    # ------------------ POLLER ------------------

    def start(self) -> None:
        if self._poll_thread is not None:
            return
        self._stop_event.clear()
        self._poll_thread = threading.Thread(target=self._poll_loop, name="chain-poller", daemon=True)
        self._poll_thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sync()
            except Exception as e:
                log.warning("[SYNC] error: %s", e)
            self._stop_event.wait(self.poll_interval)
