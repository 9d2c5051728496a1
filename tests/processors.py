# tests/processors.py
"""Processors importable by path, for the default factory and the CLI."""

from __future__ import annotations

calls: list = []


def run(data, previous_result, info):
    calls.append(data)
    return {"echo": data}


def factory(name: str):
    if name == "double":
        return lambda data, previous, info: data * 2
    return run
