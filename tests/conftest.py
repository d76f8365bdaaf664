import asyncio
import inspect
import json
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("SECRET_ENCRYPTION_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FLOW_RETRY_BACKOFF_SECONDS", "0.01")
os.environ.pop("OPENAI_API_KEY", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from opsflow.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

TENANT = "acme"
USER = "user-1"


class StaticPlanBackend:
    """Model backend answering every planning call with the same plan."""

    mode = "static"

    def __init__(self, plan):
        self.plan = plan
        self.calls = []

    def generate(self, messages, *, temperature, max_tokens, json_mode=False):
        self.calls.append(messages)
        content = self.plan if isinstance(self.plan, str) else json.dumps(self.plan)
        return {"content": content, "usage": {"total_tokens": 0}, "model": "static"}


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def use_plan(runtime):
    """Install a fixed AI plan on the runtime's planner."""

    def _install(plan):
        backend = StaticPlanBackend(plan)
        runtime.llm.backend = backend
        return backend

    return _install


@pytest.fixture
def seed_records(runtime):
    def _seed(kind, *rows, tenant_id=TENANT):
        return [runtime.store.create_record(tenant_id, kind, dict(row)) for row in rows]

    return _seed


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
