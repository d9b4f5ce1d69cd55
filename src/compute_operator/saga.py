"""Ordered actions with compensations.

Used wherever a change spans two services with no shared transaction,
typically "reserve quota with identity, then create the object". Each
action is paired with an undo; if a later action fails, the undos of the
actions already done run in reverse before the failure is re-raised.

EXAMPLE:
```python
await Saga(
    Action("create allocation", create_allocation, delete_allocation),
    Action("create cluster", create_cluster),
).run()
```
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Step = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Action:
    """A forward step and the step that reverses it."""

    name: str
    do: Step
    undo: Step | None = None


class Saga:
    """Runs actions in order, unwinding completed ones on failure."""

    def __init__(self, *actions: Action) -> None:
        self.actions = list(actions)

    async def run(self) -> None:
        """Execute every action.

        On failure the original exception propagates unchanged. Failed
        compensations are logged and recorded on it as notes and in a
        ``compensation_errors`` attribute.
        """
        done: list[Action] = []

        for action in self.actions:
            try:
                await action.do()
            except Exception as e:
                logger.warning(
                    "Saga action failed, compensating",
                    extra={"action": action.name, "error": str(e), "completed": len(done)},
                )
                errors = await self._compensate(done)
                if errors:
                    e.compensation_errors = errors  # type: ignore[attr-defined]
                    for name, error in errors:
                        e.add_note(f"compensation {name!r} failed: {error}")
                raise

            done.append(action)

    async def _compensate(self, done: list[Action]) -> list[tuple[str, Exception]]:
        errors: list[tuple[str, Exception]] = []

        for action in reversed(done):
            if action.undo is None:
                continue
            try:
                await action.undo()
            except Exception as e:
                logger.error(
                    "Saga compensation failed",
                    extra={"action": action.name, "error": str(e), "error_type": type(e).__name__},
                )
                errors.append((action.name, e))

        return errors
