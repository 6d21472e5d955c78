"""Explicit stage outcomes consumed by the discovery orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

_T = TypeVar("_T")


@dataclass(frozen=True)
class Ok(Generic[_T]):
    value: _T


@dataclass(frozen=True)
class Skip:
    """Non-fatal problem; the run continues and the caller sees a warning."""

    reason: str


@dataclass(frozen=True)
class Fatal:
    """Unrecoverable problem; the run ends with a terminal error."""

    reason: str
    code: str = "DISCOVERY_FATAL"


StageResult = Union[Ok[_T], Skip, Fatal]
