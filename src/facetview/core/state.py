# state.py
# SPDX-License-Identifier: MIT
"""Run phases and the transitions allowed between them."""

from __future__ import annotations

from enum import Enum

__all__ = ["RunState", "ALLOWED_TRANSITIONS", "check_transition"]


class RunState(str, Enum):
    INIT = "init"
    LOADING = "loading"
    JOINING = "joining"
    WRITING = "writing"
    LOCK_ACQUIRE = "lock_acquire"
    PUBLISHING = "publishing"
    LOCK_RELEASE = "lock_release"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED)

    def __str__(self) -> str:
        return self.value


_HAPPY_PATH = (
    RunState.INIT,
    RunState.LOADING,
    RunState.JOINING,
    RunState.WRITING,
    RunState.LOCK_ACQUIRE,
    RunState.PUBLISHING,
    RunState.LOCK_RELEASE,
    RunState.DONE,
)

ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    state: frozenset({nxt, RunState.FAILED}) for state, nxt in zip(_HAPPY_PATH, _HAPPY_PATH[1:])
}
ALLOWED_TRANSITIONS[RunState.DONE] = frozenset()
ALLOWED_TRANSITIONS[RunState.FAILED] = frozenset()


def check_transition(current: RunState, target: RunState) -> None:
    """Raise ``RuntimeError`` unless ``current -> target`` is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise RuntimeError(f"Illegal run state transition {current} -> {target}")
