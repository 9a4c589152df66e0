import asyncio

from dmsync.memory import InMemorySubstrate
from dmsync.models import Profile


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class SequentialIds:
    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self.counter = 0

    def __call__(self) -> str:
        self.counter += 1
        return f"{self.prefix}-{self.counter:04d}"


async def settle(rounds: int = 20) -> None:
    """Let scheduled deliveries and worker tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


async def seeded_substrate(*user_ids: str, clock: FakeClock | None = None) -> InMemorySubstrate:
    kwargs = {"id_func": SequentialIds()}
    if clock is not None:
        kwargs["now_func"] = clock.now
    substrate = InMemorySubstrate(**kwargs)
    for user_id in user_ids or ("alice", "bob"):
        await substrate.upsert_profile(Profile(id=user_id, email=f"{user_id}@example.com"))
    return substrate
