# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Protocol, Tuple, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

# -------------------------------------------------------------------
# PROTOCOL CONSTANTS (Meowcoin dual PoW)
# -------------------------------------------------------------------

MEOWPOW_VERSION = 0x30090000
SCRYPT_VERSION = 0x30090100

EPOCH_BLOCK_LENGTH = 2016
TARGET_BLOCK_TIME = 60  # chain-wide, one block per minute across both algorithms

# Retarget bound: x4 up (+300%), /4 down (-75%)
MAX_RETARGET_INCREASE = 300.0
MAX_RETARGET_DECREASE = -75.0

METRICS_WINDOW = 12
SLOPE_BOUND = 0.1

HALVING_INTERVAL = 2_100_000

DEFAULT_CACHE_TTL_SEC = 30.0


# -------------------------------------------------------------------
# ALGORITHMS
# -------------------------------------------------------------------

class AlgorithmTag(Enum):
    MEOWPOW = 0
    SCRYPT = 1

    PRIMARY = 0
    SECONDARY = 1

    @property
    def algo_id(self) -> int:
        return int(self.value)

    @property
    def version(self) -> int:
        return MEOWPOW_VERSION if self is AlgorithmTag.MEOWPOW else SCRYPT_VERSION

    @property
    def display_name(self) -> str:
        return "MeowPow" if self is AlgorithmTag.MEOWPOW else "Scrypt"

    @property
    def key(self) -> str:
        return self.display_name.lower()


def per_algorithm_block_time(target_block_time: float = TARGET_BLOCK_TIME) -> float:
    """Expected spacing between two blocks of the *same* algorithm.

    Both algorithms share the chain-wide target, so each one only produces
    every len(AlgorithmTag)-th block on average (60s chain -> 120s per algo).
    """
    return float(target_block_time) * len(AlgorithmTag)


def tag_for_version(version: Any) -> Optional[AlgorithmTag]:
    if not isinstance(version, int) or isinstance(version, bool):
        return None
    for tag in AlgorithmTag:
        if tag.version == version:
            return tag
    return None


# -------------------------------------------------------------------
# DATACLASSES
# -------------------------------------------------------------------

@dataclass(frozen=True)
class Block:
    height: int
    version: int
    difficulty: float
    timestamp: int

    @classmethod
    def from_header(cls, header: Dict[str, Any]) -> "Block":
        """Build from a daemon `getblockheader` (verbose) result."""
        return cls(
            height=int(header.get("height", 0)),
            version=int(header.get("version", 0)),
            difficulty=float(header.get("difficulty", 0.0)),
            timestamp=int(header.get("time", 0)),
        )


@dataclass(frozen=True)
class AlgorithmMetrics:
    current_difficulty: float
    difficulty_change: float
    slope: float
    timing_ratio: float
    avg_block_time: float
    algorithm: str
    computed_at: int
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentDifficulty": self.current_difficulty,
            "difficultyChange": self.difficulty_change,
            "slope": self.slope,
            "timingRatio": self.timing_ratio,
            "avgBlockTime": self.avg_block_time,
            "algorithm": self.algorithm,
            "lastUpdate": self.computed_at,
            "auxpowActive": self.is_active,
        }


@dataclass(frozen=True)
class RetargetProjection:
    algorithm: str
    progress_percent: float = 0.0
    difficulty_change: float = 0.0
    estimated_retarget_date: int = 0  # epoch millis
    remaining_blocks: int = 0
    remaining_time: int = 0  # millis
    previous_retarget: float = 0.0
    previous_time: int = 0  # reserved
    next_retarget_height: int = 0
    time_avg: int = 0  # millis
    time_offset: int = 0  # reserved
    expected_blocks: float = 0.0
    is_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "progressPercent": self.progress_percent,
            "difficultyChange": self.difficulty_change,
            "estimatedRetargetDate": self.estimated_retarget_date,
            "remainingBlocks": self.remaining_blocks,
            "remainingTime": self.remaining_time,
            "previousRetarget": self.previous_retarget,
            "previousTime": self.previous_time,
            "nextRetargetHeight": self.next_retarget_height,
            "timeAvg": self.time_avg,
            "timeOffset": self.time_offset,
            "expectedBlocks": self.expected_blocks,
            "algorithm": self.algorithm,
            "auxpowActive": self.is_active,
        }


@dataclass(frozen=True)
class DualSnapshot(Generic[T]):
    """One entry per algorithm, always both.

    T is AlgorithmMetrics for the metrics view, RetargetProjection for the
    retarget view.
    """
    meowpow: T
    scrypt: T

    def get(self, tag: AlgorithmTag) -> T:
        return self.meowpow if tag is AlgorithmTag.MEOWPOW else self.scrypt

    def to_dict(self) -> Dict[str, Any]:
        return {
            AlgorithmTag.MEOWPOW.key: self.meowpow.to_dict(),
            AlgorithmTag.SCRYPT.key: self.scrypt.to_dict(),
        }


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    snapshot: T
    computed_at_ms: int


# -------------------------------------------------------------------
# CLASSIFIER
# -------------------------------------------------------------------

def classify(blocks: Iterable[Block]) -> Tuple[List[Block], List[Block]]:
    """Split an ordered block stream into (meowpow, scrypt) sub-sequences.

    Blocks whose version matches neither algorithm are dropped.
    """
    meowpow: List[Block] = []
    scrypt: List[Block] = []
    for b in blocks or ():
        tag = tag_for_version(getattr(b, "version", None))
        if tag is AlgorithmTag.MEOWPOW:
            meowpow.append(b)
        elif tag is AlgorithmTag.SCRYPT:
            scrypt.append(b)
    return meowpow, scrypt


# -------------------------------------------------------------------
# METRICS CALCULATOR
# -------------------------------------------------------------------

def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def _finite(x: float, fallback: float = 0.0) -> float:
    x = float(x)
    return x if math.isfinite(x) else fallback


def compute_metrics(
    blocks: List[Block],
    tag: AlgorithmTag,
    is_active: bool,
    now: Optional[float] = None,
    target_block_time: Optional[float] = None,
) -> AlgorithmMetrics:
    """Difficulty/timing snapshot for one algorithm's block sub-sequence.

    target_block_time is the per-algorithm spacing; it defaults to
    per_algorithm_block_time() (120s).
    """
    target = float(target_block_time) if target_block_time else per_algorithm_block_time()
    computed_at = int(now if now is not None else time.time())
    blocks = list(blocks or ())

    if len(blocks) < 2:
        log.debug("[DIFF] %s: not enough blocks (%d), using defaults", tag.display_name, len(blocks))
        return AlgorithmMetrics(
            current_difficulty=0.0,
            difficulty_change=0.0,
            slope=0.0,
            timing_ratio=1.0,
            avg_block_time=target,
            algorithm=tag.display_name,
            computed_at=computed_at,
            is_active=bool(is_active),
        )

    recent = sorted(blocks, key=lambda b: int(b.height), reverse=True)[:METRICS_WINDOW]

    current = _finite(recent[0].difficulty)
    previous = _finite(recent[1].difficulty)
    change = (current / previous - 1.0) * 100.0 if previous > 0 else 0.0

    deltas = []
    for later, earlier in zip(recent, recent[1:]):
        dt = int(later.timestamp) - int(earlier.timestamp)
        if dt > 0:
            deltas.append(dt)
    avg_block_time = sum(deltas) / len(deltas) if deltas else target

    timing_ratio = avg_block_time / target
    slope = _clamp(timing_ratio - 1.0, -SLOPE_BOUND, SLOPE_BOUND)

    return AlgorithmMetrics(
        current_difficulty=current,
        difficulty_change=_finite(change),
        slope=_finite(slope),
        timing_ratio=_finite(timing_ratio, 1.0),
        avg_block_time=_finite(avg_block_time, target),
        algorithm=tag.display_name,
        computed_at=computed_at,
        is_active=bool(is_active),
    )


# -------------------------------------------------------------------
# RETARGET PROJECTOR
# -------------------------------------------------------------------

def project_retarget(
    tag: AlgorithmTag,
    current_height: int,
    now: float,
    epoch_start_time: int,
    previous_retarget: float,
    latest_block: Optional[Block],
    epoch_length: int = EPOCH_BLOCK_LENGTH,
    target_block_time: float = TARGET_BLOCK_TIME,
    is_active: bool = False,
) -> RetargetProjection:
    if latest_block is None:
        return RetargetProjection(algorithm=tag.display_name, is_active=bool(is_active))

    epoch_length = max(1, int(epoch_length))
    target = float(target_block_time)
    height = int(current_height)
    now = int(now)

    blocks_in_epoch = height % epoch_length if height >= 0 else 0
    progress = _clamp(blocks_in_epoch / epoch_length * 100.0, 0.0, 100.0)
    remaining_blocks = epoch_length - blocks_in_epoch
    next_retarget_height = max(height, 0) + remaining_blocks

    elapsed = max(0, now - int(epoch_start_time))
    expected_blocks = elapsed / target

    # On the last block of the epoch the retarget is already determined by
    # that block's timestamp, not by the wall clock.
    end = int(latest_block.timestamp) if blocks_in_epoch == epoch_length - 1 else now
    actual_timespan = end - int(epoch_start_time)

    if actual_timespan == 0:
        change = MAX_RETARGET_INCREASE
    else:
        change = (target / (actual_timespan / (blocks_in_epoch + 1)) - 1.0) * 100.0
    change = _clamp(_finite(change, MAX_RETARGET_INCREASE), MAX_RETARGET_DECREASE, MAX_RETARGET_INCREASE)

    time_avg_secs = elapsed / blocks_in_epoch if blocks_in_epoch else target
    time_avg = int(math.floor(time_avg_secs * 1000))
    remaining_time = remaining_blocks * time_avg

    return RetargetProjection(
        algorithm=tag.display_name,
        progress_percent=progress,
        difficulty_change=change,
        estimated_retarget_date=remaining_time + now * 1000,
        remaining_blocks=remaining_blocks,
        remaining_time=remaining_time,
        previous_retarget=_finite(previous_retarget or 0.0),
        previous_time=0,
        next_retarget_height=next_retarget_height,
        time_avg=time_avg,
        time_offset=0,
        expected_blocks=expected_blocks,
        is_active=bool(is_active),
    )


# -------------------------------------------------------------------
# HALVING
# -------------------------------------------------------------------

def halving_info(
    height: int,
    now: float,
    interval: int = HALVING_INTERVAL,
    target_block_time: float = TARGET_BLOCK_TIME,
) -> Dict[str, int]:
    height = max(0, int(height))
    blocks_until = interval - (height % interval)
    return {
        "height": height,
        "halvings": height // interval,
        "nextHalvingHeight": height + blocks_until,
        "blocksUntilHalving": blocks_until,
        "timeUntilHalving": int(now * 1000) + int(blocks_until * target_block_time * 1000),
    }


# -------------------------------------------------------------------
# AGGREGATOR
# -------------------------------------------------------------------

def aggregate_metrics(
    blocks: Iterable[Block],
    secondary_hashrate: Optional[float],
    now: Optional[float] = None,
    target_block_time: float = TARGET_BLOCK_TIME,
) -> DualSnapshot[AlgorithmMetrics]:
    meowpow, scrypt = classify(blocks)
    log.debug("[DIFF] classified %d MeowPow / %d Scrypt blocks", len(meowpow), len(scrypt))
    algo_target = per_algorithm_block_time(target_block_time)
    return DualSnapshot(
        meowpow=compute_metrics(meowpow, AlgorithmTag.MEOWPOW, True, now, algo_target),
        scrypt=compute_metrics(scrypt, AlgorithmTag.SCRYPT, (secondary_hashrate or 0) > 0, now, algo_target),
    )


def aggregate_retarget(
    blocks: List[Block],
    current_height: int,
    epoch_start_time: int,
    previous_retarget: float,
    secondary_hashrate: Optional[float],
    now: float,
    epoch_length: int = EPOCH_BLOCK_LENGTH,
    target_block_time: float = TARGET_BLOCK_TIME,
) -> DualSnapshot[RetargetProjection]:
    # Retarget runs on the global chain height and epoch, shared by both algorithms.
    blocks = list(blocks or ())
    meowpow, scrypt = classify(blocks)
    log.debug("[DIFF] retarget over %d blocks (%d MeowPow / %d Scrypt)", len(blocks), len(meowpow), len(scrypt))
    latest = blocks[-1] if blocks else None
    scrypt_active = (secondary_hashrate or 0) > 0

    def project(tag: AlgorithmTag, active: bool) -> RetargetProjection:
        return project_retarget(
            tag,
            current_height,
            now,
            epoch_start_time,
            previous_retarget,
            latest,
            epoch_length=epoch_length,
            target_block_time=target_block_time,
            is_active=active,
        )

    return DualSnapshot(
        meowpow=project(AlgorithmTag.MEOWPOW, True),
        scrypt=project(AlgorithmTag.SCRYPT, scrypt_active),
    )


class ChainSource(Protocol):
    def get_blocks(self) -> List[Block]: ...
    def get_current_block_height(self) -> int: ...
    def get_last_difficulty_adjustment_time(self) -> int: ...
    def get_previous_difficulty_retarget(self) -> float: ...


class HashrateSource(Protocol):
    def get_difficulty(self, algo: int = 0) -> float: ...
    def get_network_hash_ps(self, blocks: int = 0, height: int = -1, algo: int = 0) -> float: ...


def fetch_hashrate(source: Optional[HashrateSource], tag: AlgorithmTag) -> float:
    """Live network hashrate for one algorithm, 0.0 when it cannot be read."""
    if source is None:
        return 0.0
    try:
        value = float(source.get_network_hash_ps(0, -1, tag.algo_id) or 0.0)
    except Exception as e:
        log.debug("[DIFF] %s hashrate unavailable, assuming 0: %s", tag.display_name, e)
        return 0.0
    return value if math.isfinite(value) and value > 0 else 0.0


# -------------------------------------------------------------------
# FRESHNESS CACHE
# -------------------------------------------------------------------

class FreshnessCache(Generic[T]):
    """Single-entry, time-boxed cache around a snapshot computation."""

    def __init__(
        self,
        compute: Callable[[], T],
        ttl: float = DEFAULT_CACHE_TTL_SEC,
        clock: Callable[[], float] = time.time,
        name: str = "snapshot",
    ):
        self.compute = compute
        self.ttl_ms = int(float(ttl) * 1000)
        self.clock = clock
        self.name = name
        self.entry: Optional[CacheEntry[T]] = None
        self.recomputations = 0

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def get(self) -> T:
        now_ms = self._now_ms()
        entry = self.entry
        if entry is not None and (now_ms - entry.computed_at_ms) < self.ttl_ms:
            return entry.snapshot

        snapshot = self.compute()
        self.recomputations += 1
        self.entry = CacheEntry(snapshot=snapshot, computed_at_ms=now_ms)
        log.debug("[CACHE] %s recomputed (#%d)", self.name, self.recomputations)
        return snapshot

    def invalidate(self) -> None:
        self.entry = None


# -------------------------------------------------------------------
# SERVICE
# -------------------------------------------------------------------

class DualDifficultyService:
    """Metrics + retarget views over one chain source, each behind its own cache.

    Constructed once per process and handed to the route layer.
    """

    def __init__(
        self,
        chain: ChainSource,
        hashrate: Optional[HashrateSource] = None,
        clock: Callable[[], float] = time.time,
        metrics_ttl: float = DEFAULT_CACHE_TTL_SEC,
        retarget_ttl: float = DEFAULT_CACHE_TTL_SEC,
        epoch_length: int = EPOCH_BLOCK_LENGTH,
        target_block_time: float = TARGET_BLOCK_TIME,
    ):
        self.chain = chain
        self.hashrate = hashrate
        self.clock = clock
        self.epoch_length = int(epoch_length)
        self.target_block_time = float(target_block_time)
        self.metrics_cache = FreshnessCache(self._compute_metrics, metrics_ttl, clock, name="metrics")
        self.retarget_cache = FreshnessCache(self._compute_retarget, retarget_ttl, clock, name="retarget")

    def _compute_metrics(self) -> DualSnapshot[AlgorithmMetrics]:
        blocks = self.chain.get_blocks()
        return aggregate_metrics(
            blocks,
            fetch_hashrate(self.hashrate, AlgorithmTag.SCRYPT),
            now=self.clock(),
            target_block_time=self.target_block_time,
        )

    def _compute_retarget(self) -> DualSnapshot[RetargetProjection]:
        return aggregate_retarget(
            self.chain.get_blocks(),
            self.chain.get_current_block_height(),
            self.chain.get_last_difficulty_adjustment_time(),
            self.chain.get_previous_difficulty_retarget(),
            fetch_hashrate(self.hashrate, AlgorithmTag.SCRYPT),
            self.clock(),
            epoch_length=self.epoch_length,
            target_block_time=self.target_block_time,
        )

    def metrics(self) -> DualSnapshot[AlgorithmMetrics]:
        return self.metrics_cache.get()

    def retarget(self) -> DualSnapshot[RetargetProjection]:
        return self.retarget_cache.get()

    def invalidate(self) -> None:
        self.metrics_cache.invalidate()
        self.retarget_cache.invalidate()

    def halving(self) -> Dict[str, int]:
        return halving_info(
            self.chain.get_current_block_height(),
            self.clock(),
            target_block_time=self.target_block_time,
        )

    def dual_pow_stats(self) -> Dict[str, Dict[str, Any]]:
        """Raw daemon difficulty + hashrate per algorithm (not cached here)."""
        values = {tag: {"difficulty": 0.0, "hashrate": 0.0} for tag in (AlgorithmTag.MEOWPOW, AlgorithmTag.SCRYPT)}
        source = self.hashrate
        if source is not None:
            try:
                for tag in values:
                    values[tag]["difficulty"] = float(source.get_difficulty(tag.algo_id) or 0.0)
                for tag in values:
                    values[tag]["hashrate"] = float(source.get_network_hash_ps(0, -1, tag.algo_id) or 0.0)
            except Exception as e:
                log.debug("[RPC] node not available, using zeroed dual PoW stats: %s", e)
                values = {tag: {"difficulty": 0.0, "hashrate": 0.0} for tag in values}

        meowpow = values[AlgorithmTag.MEOWPOW]
        scrypt = values[AlgorithmTag.SCRYPT]
        return {
            AlgorithmTag.MEOWPOW.key: {
                "difficulty": meowpow["difficulty"],
                "hashrate": meowpow["hashrate"],
                "algorithm": AlgorithmTag.MEOWPOW.display_name,
            },
            AlgorithmTag.SCRYPT.key: {
                "difficulty": scrypt["difficulty"],
                "hashrate": scrypt["hashrate"],
                "algorithm": AlgorithmTag.SCRYPT.display_name,
                "auxpowActive": scrypt["hashrate"] > 0,
            },
        }
