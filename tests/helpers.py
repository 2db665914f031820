from notifications.batching import BatchCoordinator
from notifications.models import SendResult
from notifications.store import InMemoryStore

START_MS = 1_700_000_000_000
MINUTE_MS = 60 * 1000


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def seconds(self) -> float:
        return self.now / 1000.0

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeSender:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or SendResult(success_count=2, failure_count=0)
        self.error = error

    def __call__(self, payload):
        self.calls.append(payload)
        if self.error is not None:
            raise self.error
        return self.result


def make_coordinator(sender=None, scheduler=None, clock=None):
    clock = clock or FakeClock()
    store = InMemoryStore(clock=clock.seconds)
    sender = sender or FakeSender()
    coordinator = BatchCoordinator(store, sender, scheduler=scheduler, clock=clock)
    return coordinator, store, sender, clock
