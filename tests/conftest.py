from pathlib import Path

import pytest

import flowsmith.persistence as persistence
from flowsmith.agents.invoker import as_agent_result
from flowsmith.definition import DefinitionLibrary
from flowsmith.events import InMemoryEventSink
from flowsmith.persistence import InMemoryStateStore
from flowsmith.utils import retry

WORKFLOWS_DIR = Path(__file__).parent / "fixtures" / "workflows"


class ScriptedInvoker:
    """Invoker whose outcomes are scripted per step name.

    Each script entry is either a value (returned as the output), an
    ``AgentResult`` or an exception instance (raised). Steps without a
    script, or whose script has run out, return ``"<step name> output"``.
    """

    def __init__(self, scripts=None, variables=None):
        self.scripts = {name: list(items) for name, items in (scripts or {}).items()}
        self.variables = dict(variables or {})
        self.calls = []
        self.contexts = []

    async def invoke(self, step, context, deadline):
        self.calls.append(step.name)
        self.contexts.append(context)
        script = self.scripts.get(step.name)
        if script:
            outcome = script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return as_agent_result(outcome)
        result = as_agent_result(f"{step.name} output")
        result.variables.update(self.variables)
        return result


@pytest.fixture
def workflows_dir():
    return WORKFLOWS_DIR


@pytest.fixture
def library():
    return DefinitionLibrary(WORKFLOWS_DIR)


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def scripted():
    return ScriptedInvoker


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    async def _no_sleep(delay_ms):
        return None

    monkeypatch.setattr(retry, "schedule_retry", _no_sleep)


@pytest.fixture(autouse=True)
def reset_store_cache(monkeypatch):
    monkeypatch.setattr(persistence, "_store_instance", None)
    monkeypatch.delenv("FLOWSMITH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("FLOWSMITH_EVENTS", raising=False)
    monkeypatch.setenv("FLOWSMITH_CONFIG", str(WORKFLOWS_DIR / "missing-config.yaml"))
