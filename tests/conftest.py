import asyncio
import inspect

import pytest

def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: run test in event loop")
    config.addinivalue_line("markers", "e2e: requires a running server")

@pytest.fixture
def event_loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()

@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop = pyfuncitem.funcargs.get('event_loop')
        if loop is None:
            asyncio.run(pyfuncitem.obj(**kwargs))
        else:
            loop.run_until_complete(pyfuncitem.obj(**kwargs))
        return True
    return None
