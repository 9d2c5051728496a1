# tests/test_executor.py

from __future__ import annotations

import json

import pytest

from taskrunner.errors import ProcessorFailure
from taskrunner.executor import (
    DirectInvocation,
    MethodInvocation,
    import_processor,
    invoke,
    load_factory,
    resolve_processor,
)
from taskrunner.models import ExtendedInfo
from taskrunner.utils import utcnow

from . import processors


def info() -> ExtendedInfo:
    return ExtendedInfo(created_at=utcnow())


class WithRun:
    def run(self, data, previous_result, info):
        return (data, previous_result)


class CallableWithRun(WithRun):
    def __call__(self, *args):
        return "called"


def test_resolve_function_is_direct() -> None:
    inv = resolve_processor(processors.run, "x")
    assert isinstance(inv, DirectInvocation)
    assert inv.call is processors.run


def test_resolve_object_with_run_is_method() -> None:
    assert isinstance(resolve_processor(WithRun()), MethodInvocation)
    # run() wins over __call__
    assert isinstance(resolve_processor(CallableWithRun()), MethodInvocation)
    assert isinstance(resolve_processor(processors), MethodInvocation)


def test_resolve_rejects_other_values() -> None:
    with pytest.raises(TypeError):
        resolve_processor(42, "broken")


@pytest.mark.asyncio
async def test_invoke_passes_arguments() -> None:
    assert await invoke(resolve_processor(WithRun()), "d", "prev", info()) == ("d", "prev")


@pytest.mark.asyncio
async def test_invoke_awaits_returned_awaitable() -> None:
    async def later(value):
        return value

    def returns_coroutine(data, previous_result, info):
        return later(data * 2)

    assert await invoke(resolve_processor(returns_coroutine), 21, None, info()) == 42


@pytest.mark.asyncio
async def test_invoke_wraps_errors() -> None:
    def boom(data, previous_result, info):
        raise KeyError("missing")

    with pytest.raises(ProcessorFailure) as exc:
        await invoke(resolve_processor(boom, "boom"), None, None, info())

    assert exc.value.task_name == "boom"
    assert exc.value.message == "'missing'"
    assert isinstance(exc.value.__cause__, KeyError)


@pytest.mark.asyncio
async def test_invoke_uses_exception_type_when_message_is_empty() -> None:
    async def silent(data, previous_result, info):
        raise RuntimeError()

    with pytest.raises(ProcessorFailure, match="RuntimeError"):
        await invoke(resolve_processor(silent), None, None, info())


def test_import_processor() -> None:
    assert import_processor("json:dumps") is json.dumps
    assert import_processor("tests.processors") is processors
    assert import_processor("tests.processors:factory") is processors.factory
    with pytest.raises(ImportError):
        import_processor("no_such_module_here")


def test_load_factory() -> None:
    factory = load_factory("tests.processors:factory")
    assert factory("double")(4, None, None) == 8
    with pytest.raises(TypeError):
        load_factory("tests.processors:calls")
