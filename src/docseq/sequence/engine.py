from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from docseq.logging import get_logger
from docseq.persistence.core import RefBase, StorageError
from docseq.persistence.counter import CounterStore, ReferenceValue, UpsertOutcome
from docseq.sequence.options import SequenceOptions
from docseq.utils import assign_path, expand_dotted, resolve_path

logger = get_logger(__name__)


@dataclass(frozen=True)
class SeedResult:
    """
    Result of the first phase of an allocation.

    Attributes:
        outcome (UpsertOutcome): What the counter upsert did.
        value (int | None): ``start_seq`` when this call created the counter.
    """

    outcome: UpsertOutcome
    value: Optional[int] = None

    @property
    def created(self) -> bool:
        return self.outcome is UpsertOutcome.CREATED


def _plain(value: Any) -> Any:
    if isinstance(value, RefBase):
        return value.id
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    if isinstance(value, Enum):
        return value.value
    return value


def _expanded(reference: Any) -> Any:
    return expand_dotted(reference) if isinstance(reference, Mapping) else reference


class Sequence:
    """
    Allocation of unique, increasing numbers for one sequence id.

    A counter record exists per reference value (or a single one when the
    sequence has no reference fields). Allocating is done in two phases:

    1. The record is upserted with no mutation. If this call inserted it,
       the record already holds ``start_seq`` and that is the value.
    2. Otherwise ``seq`` is atomically incremented by ``inc_amount``.

    Uniqueness relies only on the unique index of the counter store and on
    the atomic increment, so it holds across processes.
    """

    def __init__(self, options: SequenceOptions, store: CounterStore):
        self.options = options
        self.store = store

    def __repr__(self):
        return f"Sequence({self.id!r}, inc_field={self.inc_field!r})"

    @property
    def id(self) -> str:
        return self.options.sequence_id

    @property
    def inc_field(self) -> str:
        return self.options.inc_field

    @property
    def reference_fields(self) -> tuple[str, ...]:
        return self.options.reference_fields or ()

    @property
    def uses_reference(self) -> bool:
        return self.options.uses_reference

    def reference_value(self, document: Any) -> ReferenceValue:
        """
        Derive the counter key of a document.

        Args:
            document: A persistent object, a mapping or a partial document.

        Returns:
            None for sequences without reference fields, otherwise a nested
            mapping with the value of every reference field, built in sorted
            field order. Missing fields are None.
        """
        if not self.uses_reference:
            return None

        reference: dict[str, Any] = {}
        for field in self.reference_fields:
            assign_path(reference, field, _plain(resolve_path(document, field)))
        return reference

    async def create_counter_if_absent(self, reference_value: ReferenceValue) -> SeedResult:
        outcome = await self.store.upsert_no_match(
            self.id, reference_value, self.options.start_seq
        )
        if outcome is UpsertOutcome.CREATED:
            return SeedResult(outcome, self.options.start_seq)
        return SeedResult(outcome)

    async def increment_existing(self, reference_value: ReferenceValue) -> int:
        """
        Atomically add ``inc_amount`` to an existing counter.

        Raises:
            StorageError: If the counter is still missing after the retries.
        """
        attempts = self.options.retries + 1
        for attempt in range(attempts):
            record = await self.store.atomic_increment(
                self.id, reference_value, self.options.inc_amount
            )
            if record is not None:
                return record.seq

            if attempt + 1 < attempts:
                logger.warning(
                    "Counter %s %r not visible yet, retrying (%d/%d)",
                    self.id,
                    reference_value,
                    attempt + 1,
                    self.options.retries,
                )
                await asyncio.sleep(0)

        raise StorageError(
            f"Counter {self.id!r} for {reference_value!r} is missing after {attempts} attempts"
        )

    async def allocate(self, document: Any) -> int:
        """Return the next value of the counter the document belongs to."""
        reference_value = self.reference_value(document)

        seed = await self.create_counter_if_absent(reference_value)
        if seed.created:
            value = seed.value
        else:
            value = await self.increment_existing(reference_value)

        logger.debug("Sequence %s %r allocated %d", self.id, reference_value, value)
        return value

    async def reset(self, reference: Any = None) -> int:
        """
        Reset counters so that their next allocation is ``start_seq``.

        Args:
            reference: None to reset every counter of this sequence, or a
                document (even partial) whose reference value selects the
                single counter to reset. Dotted keys of a mapping
                (``{"parent.nested": 1}``) are expanded.

        Returns:
            int: The number of counters reset.
        """
        filter: dict[str, Any] = {"id": self.id}
        if reference is not None:
            filter["reference_value"] = self.reference_value(_expanded(reference))

        count = await self.store.bulk_set_field(filter, "seq", self.options.reset_seq)
        logger.debug("Sequence %s reset %d counters", self.id, count)
        return count

    async def current(self, reference: Any = None) -> Optional[int]:
        """The last value issued for the reference, None if never allocated."""
        reference_value = self.reference_value(_expanded(reference))
        record = await self.store.fetch(self.id, reference_value)
        return None if record is None else record.seq
