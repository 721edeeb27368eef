"""
Pytest fixtures for orchestrator tests.
"""

import asyncio

import pytest

from shared.account_store import InMemoryAccountStore
from shared.credit_gate import CreditGate
from shared.retry import RetryPolicy
from orchestrator.sequencer import StageSequencer
from orchestrator.stage import StageSpec


class ScriptedExecutor:
    """
    Stage executor that plays back a script of outcomes.

    Each script item is either an exception (raised) or a value (returned).
    When the script runs out, the stage returns its input plus its name.
    """

    def __init__(self, name, cost=1, script=None, gate=None):
        self.name = name
        self.cost = cost
        self.script = list(script or [])
        self.gate = gate
        self.calls = []

    def estimate_cost(self, stage_input):
        return self.cost

    async def execute(self, stage_input):
        self.calls.append(stage_input)
        if self.gate is not None:
            await self.gate.wait()
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return (stage_input or []) + [self.name]


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def store():
    store = InMemoryAccountStore()
    store.add_account("acct-1", balance=100)
    store.add_account("broke", balance=0)
    store.add_account("admin", balance=0, unlimited=True)
    return store


@pytest.fixture
def credit_gate(store):
    return CreditGate(store)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def sequencer(credit_gate, recording_sleep):
    return StageSequencer(credit_gate, retry_policy=RetryPolicy(), sleep=recording_sleep, default_timeout=5)


@pytest.fixture
def make_stages():
    """Build StageSpecs from ScriptedExecutors keyed by stage name."""
    def _make(*executors, timeout=None):
        return [StageSpec(name=e.name, executor=e, timeout=timeout) for e in executors]
    return _make


@pytest.fixture
def scripted():
    """The ScriptedExecutor class, for building stages inside a test."""
    return ScriptedExecutor


class QueueStream:
    """Push stream fed from an asyncio.Queue; exceptions in the queue are raised."""

    def __init__(self, queue):
        self.queue = queue
        self.closed = False

    def __aiter__(self):
        return self._events()

    async def _events(self):
        while True:
            item = await self.queue.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    async def aclose(self):
        self.closed = True


class QueuePushSource:
    """In-memory push source. open() can be scripted to fail or hang."""

    def __init__(self, failures=0, hang=False):
        self.queues = {}
        self.opened = []
        self.failures = failures
        self.hang = hang

    def queue(self, job_id):
        return self.queues.setdefault(job_id, asyncio.Queue())

    async def open(self, job_id):
        if self.hang:
            await asyncio.Event().wait()
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("progress stream refused")
        self.opened.append(job_id)
        return QueueStream(self.queue(job_id))


class ScriptedPollSource:
    """Poll source returning scripted snapshots; the last one repeats."""

    def __init__(self, snapshots):
        self.snapshots = list(snapshots)
        self.fetches = 0

    async def fetch(self, job_id):
        self.fetches += 1
        item = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(item, BaseException):
            raise item
        return item


class QueueRedis:
    """Stands in for RedisClient.publish, delivering into a QueuePushSource."""

    def __init__(self, push_source):
        self.push_source = push_source
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))
        job_id = channel.split(":", 1)[1]
        self.push_source.queue(job_id).put_nowait(message)
        return 1


@pytest.fixture
def push_source_factory():
    return QueuePushSource


@pytest.fixture
def poll_source_factory():
    return ScriptedPollSource


@pytest.fixture
def queue_redis_factory():
    return QueueRedis


async def _eventually(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """Await until predicate() is true or fail after a timeout."""
    return _eventually
