import pytest

from phaseflow.config import PhaseflowConfig, RetryConfig, RunnerConfig
from phaseflow.events import EventEmitter
from phaseflow.orchestrator import Orchestrator
from phaseflow.persistence import InMemoryStateStore


@pytest.fixture
def config() -> PhaseflowConfig:
    return PhaseflowConfig(
        retry=RetryConfig(max_attempts=3, backoff_base=0, jitter=0),
        runner=RunnerConfig(liveness_timeout=5),
    )


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def make_orchestrator(store, config):
    def factory(runner, events: EventEmitter | None = None) -> Orchestrator:
        return Orchestrator(runner, store=store, events=events or EventEmitter(), config=config)

    return factory
