import pytest

from dual_difficulty import MEOWPOW_VERSION, SCRYPT_VERSION, Block


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, now=1_700_000_000.0):
        self.now = float(now)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeChain:
    def __init__(self, blocks=None, height=None, adjustment_time=0, previous_retarget=0.0):
        self.blocks = list(blocks or [])
        if height is None:
            height = self.blocks[-1].height if self.blocks else -1
        self.height = height
        self.adjustment_time = adjustment_time
        self.previous_retarget = previous_retarget
        self.reads = 0

    def get_blocks(self):
        self.reads += 1
        return list(self.blocks)

    def get_current_block_height(self):
        return self.height

    def get_last_difficulty_adjustment_time(self):
        return self.adjustment_time

    def get_previous_difficulty_retarget(self):
        return self.previous_retarget


class FakeRPC:
    """Daemon stand-in for difficulty/hashrate lookups."""

    def __init__(self, difficulty=None, hashrate=None, fail=False):
        self.difficulty = difficulty or {0: 0.0, 1: 0.0}
        self.hashrate = hashrate or {0: 0.0, 1: 0.0}
        self.fail = fail
        self.calls = []

    def get_difficulty(self, algo=0):
        self.calls.append(("getdifficulty", algo))
        if self.fail:
            raise ConnectionError("daemon unreachable")
        return self.difficulty[algo]

    def get_network_hash_ps(self, blocks=0, height=-1, algo=0):
        self.calls.append(("getnetworkhashps", blocks, height, algo))
        if self.fail:
            raise ConnectionError("daemon unreachable")
        return self.hashrate[algo]


def make_blocks(start_height, count, version=MEOWPOW_VERSION, difficulty=1000.0, start_time=1_700_000_000, spacing=60):
    return [
        Block(height=start_height + i, version=version, difficulty=difficulty, timestamp=start_time + i * spacing)
        for i in range(count)
    ]


def interleaved_blocks(start_height, count, start_time=1_700_000_000, spacing=60):
    """Alternate MeowPow (even heights) and Scrypt (odd heights) blocks."""
    out = []
    for i in range(count):
        h = start_height + i
        version = MEOWPOW_VERSION if h % 2 == 0 else SCRYPT_VERSION
        difficulty = 1000.0 + i if version == MEOWPOW_VERSION else 50.0 + i
        out.append(Block(height=h, version=version, difficulty=difficulty, timestamp=start_time + i * spacing))
    return out


@pytest.fixture
def clock():
    return FakeClock()
