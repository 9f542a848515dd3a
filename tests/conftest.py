import asyncio
import inspect
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
	sys.path.insert(0, str(ROOT))


from flowline.event_bus import EventBus, reset_event_bus  # noqa: E402
from flowline.scheduler import Scheduler  # noqa: E402


@pytest.fixture(autouse=True)
def reset_global_event_bus():
	reset_event_bus()
	yield
	reset_event_bus()


@pytest.fixture
def event_bus():
	return EventBus()


@pytest.fixture
def scheduler():
	return Scheduler()


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
