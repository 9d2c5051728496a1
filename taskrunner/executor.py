import asyncio
import importlib
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Union

from .errors import ProcessorFailure
from .models import ExtendedInfo


@dataclass(frozen=True)
class DirectInvocation:
    """Processor is a callable: fn(data, previous_result, info)."""

    target: Callable[..., Any]
    name: str = ""

    @property
    def call(self) -> Callable[..., Any]:
        return self.target


@dataclass(frozen=True)
class MethodInvocation:
    """Processor is an object exposing run(data, previous_result, info)."""

    target: Any
    name: str = ""

    @property
    def call(self) -> Callable[..., Any]:
        return self.target.run


Invocation = Union[DirectInvocation, MethodInvocation]


def resolve_processor(processor: Any, name: str = "") -> Invocation:
    if hasattr(processor, "run") and not inspect.isroutine(processor):
        return MethodInvocation(processor, name)
    if callable(processor):
        return DirectInvocation(processor, name)
    raise TypeError(
        f"Processor for {name!r} should be callable or expose run(), got {type(processor).__name__}"
    )


async def invoke(invocation: Invocation, data: Any, previous_result: Any, info: ExtendedInfo) -> Any:
    """
    Run a processor. Coroutine functions are awaited on the loop, plain
    callables go to a worker thread. Any error comes out as ProcessorFailure.
    """
    fn = invocation.call
    try:
        if inspect.iscoroutinefunction(fn):
            result = await fn(data, previous_result, info)
        else:
            result = await asyncio.to_thread(fn, data, previous_result, info)
            if inspect.isawaitable(result):
                result = await result
    except Exception as e:
        raise ProcessorFailure(invocation.name, str(e) or type(e).__name__) from e
    return result


def import_object(path: str) -> Any:
    """'package.module:attr' or 'package.module'."""
    module_name, _, attr = path.partition(":")
    module = importlib.import_module(module_name)
    if not attr:
        return module
    obj = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


def import_processor(name: str) -> Any:
    """
    Default processor factory: the task name is an import path.
    A module given without ':attr' is used through its run() function.
    """
    return import_object(name)


def load_factory(path: str) -> Callable[[str], Any]:
    factory = import_object(path)
    if not callable(factory):
        raise TypeError(f"Processor factory {path!r} is not callable")
    return factory
