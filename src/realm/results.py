"""Structured outcomes for the CLI and the session browser.

Orchestrator operations raise; callers at the edge wrap them with
:func:`run_action` to get a uniform success / error / fatal result.
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any

from realm.errors import RealmError
from realm.logger import logger


class Outcome(enum.StrEnum):
    OK = "ok"
    ERROR = "error"  # recoverable, user-facing
    FATAL = "fatal"  # broken precondition or unexpected failure


@dataclass(frozen=True)
class ActionResult:
    outcome: Outcome
    message: str = ""
    exit_code: int = 0
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


async def run_action(action: Awaitable[Any], *, label: str) -> ActionResult:
    """Await *action* and classify its result."""
    try:
        value = await action
    except RealmError as exc:
        outcome = Outcome.FATAL if exc.fatal else Outcome.ERROR
        logger.debug(f"{label} failed", outcome=outcome.value, err=str(exc))
        return ActionResult(outcome=outcome, message=str(exc), exit_code=1, error=exc)
    except Exception as exc:
        logger.exception(f"{label} crashed")
        return ActionResult(outcome=Outcome.FATAL, message=f"Unexpected error: {exc}", exit_code=1, error=exc)
    return ActionResult(outcome=Outcome.OK, value=value)
