"""Test helpers for the exit manager test suite"""

from tests.helpers.stubs import (
    T0,
    FailingStateStore,
    StubProvider,
    StubExecutor,
    make_policy,
    make_record,
    make_snapshot,
)

__all__ = [
    "T0",
    "FailingStateStore",
    "StubProvider",
    "StubExecutor",
    "make_policy",
    "make_record",
    "make_snapshot",
]
