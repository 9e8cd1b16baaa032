from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from docseq.utils import expand_dotted

Handler = Callable[[Any], Awaitable[None]]


@dataclass
class Hook:
    handler: Handler
    parallel: bool = False


@dataclass
class UpsertDraft:
    """
    The insert that an upsert will perform when nothing matches its filter.

    Hooks receive the draft before the write and may add fields to
    ``on_insert``; they are applied with ``$setOnInsert`` so they never touch
    a document that already exists.

    Attributes:
        filter (Mapping[str, Any]): The upsert filter.
        values (Mapping[str, Any]): The fields set in any case (``$set``).
        on_insert (dict[str, Any]): Dotted paths set only on insert.
    """

    filter: Mapping[str, Any]
    values: Mapping[str, Any]
    on_insert: dict[str, Any] = field(default_factory=dict)

    def view(self) -> dict[str, Any]:
        """The document as it would be inserted, without the hook fields."""
        return expand_dotted({**self.filter, **self.values})


class LifecycleHooks:
    """
    Interceptors run by `Persistent` right before a write is issued.

    Sequential hooks run in registration order and are awaited one by one,
    so each one observes the changes made by the previous ones. Parallel
    hooks are started as tasks and lifecycle continues at once; the write
    waits until every task has finished. If any hook fails, the remaining
    parallel tasks are still awaited and the first error is raised.
    """

    def __init__(self, parent: Optional[LifecycleHooks] = None):
        self.before_insert: list[Hook] = list(parent.before_insert) if parent else []
        self.before_upsert_insert: list[Hook] = (
            list(parent.before_upsert_insert) if parent else []
        )

    def on_before_insert(self, handler: Handler, *, parallel: bool = False):
        """Register ``handler(document)`` to run before a new document is inserted."""
        self.before_insert.append(Hook(handler, parallel))
        return handler

    def on_before_upsert_insert(self, handler: Handler, *, parallel: bool = False):
        """Register ``handler(draft)`` to run before an upsert that will insert."""
        self.before_upsert_insert.append(Hook(handler, parallel))
        return handler

    async def run_before_insert(self, document: Any):
        await _run(self.before_insert, document)

    async def run_before_upsert_insert(self, draft: UpsertDraft):
        await _run(self.before_upsert_insert, draft)


async def _run(hooks: list[Hook], target: Any):
    pending: list[asyncio.Future] = []
    error: Optional[BaseException] = None

    for hook in hooks:
        if hook.parallel:
            pending.append(asyncio.ensure_future(hook.handler(target)))
            continue
        try:
            await hook.handler(target)
        except Exception as e:
            error = e
            break

    results = await asyncio.gather(*pending, return_exceptions=True)

    if error is not None:
        raise error

    for result in results:
        if isinstance(result, BaseException):
            raise result
