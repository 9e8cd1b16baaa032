from __future__ import annotations

import types
from typing import Any, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ValidationError

from docseq.logging import get_logger
from docseq.persistence.core import Persistent, hooks_of
from docseq.persistence.hooks import UpsertDraft
from docseq.sequence.engine import Sequence
from docseq.sequence.errors import ConfigurationError
from docseq.sequence.options import SequenceOptions
from docseq.sequence.registry import SequenceRegistry
from docseq.utils import assign_path

logger = get_logger(__name__)

_MISSING = object()


def _is_int_annotation(annotation: Any) -> bool:
    if annotation is int:
        return True
    if get_origin(annotation) in (Union, types.UnionType):
        return [arg for arg in get_args(annotation) if arg is not type(None)] == [int]
    return False


def _field_annotation(model: type[BaseModel], path: str) -> Any:
    """Annotation of the declared field at ``path``, `_MISSING` if undeclared."""
    *parents, leaf = path.split(".")
    for part in parents:
        field = model.model_fields.get(part)
        if field is None:
            return _MISSING
        annotation = field.annotation
        if get_origin(annotation) in (Union, types.UnionType):
            args = [arg for arg in get_args(annotation) if arg is not type(None)]
            annotation = args[0] if len(args) == 1 else annotation
        if not (isinstance(annotation, type) and issubclass(annotation, BaseModel)):
            # Free-form container, nothing declared below it
            return _MISSING
        model = annotation

    for name, field in model.model_fields.items():
        if leaf in (name, field.alias):
            return field.annotation
    return _MISSING


def attach_sequence(
    model: type[Persistent],
    registry: SequenceRegistry,
    **options,
) -> Sequence:
    """
    Give ``model`` an auto-incremented field.

    Args:
        model: The persistent class.
        registry: Where the sequence is registered, by id.
        **options: See `SequenceOptions`.

    Raises:
        ConfigurationError: If the options are invalid, the increment field
            is declared with a non integer type, or the id is already taken.
            Nothing is registered nor hooked in that case.

    Examples:
        #>>> attach_sequence(Inhabitant, registry, id="inhabitant_seq",
        #...     inc_field="number", reference_fields=["country", "city"])
    """
    try:
        sequence_options = SequenceOptions(**options)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e

    annotation = _field_annotation(model, sequence_options.inc_field)
    if annotation is not _MISSING and not _is_int_annotation(annotation):
        raise ConfigurationError(
            f"Auto increment field {sequence_options.inc_field!r} already present "
            f"and not of type int ({annotation!r})"
        )

    sequence = Sequence(sequence_options, registry.store_for(sequence_options.collection_name))
    registry.register(sequence)
    setattr(model, "__sequence_registry__", registry)

    if not sequence_options.disable_hooks:
        _set_hooks(model, sequence)

    logger.debug("Attached %r to %s", sequence, model.__qualname__)
    return sequence


def _set_hooks(model: type[Persistent], sequence: Sequence):
    async def before_insert(document: Persistent):
        value = await sequence.allocate(document)
        assign_path(document, sequence.inc_field, value)

    async def before_upsert_insert(draft: UpsertDraft):
        draft.on_insert[sequence.inc_field] = await sequence.allocate(draft.view())

    hooks = hooks_of(model)
    parallel = sequence.options.parallel_hooks
    hooks.on_before_insert(before_insert, parallel=parallel)
    hooks.on_before_upsert_insert(before_upsert_insert, parallel=parallel)


async def set_next(registry: SequenceRegistry, document: Persistent, sequence_id: str):
    """
    Allocate the next value of a sequence into ``document`` and store it.

    Raises:
        UnknownSequenceError: If no sequence has that id.
    """
    sequence = registry.lookup(sequence_id)
    value = await sequence.allocate(document)
    assign_path(document, sequence.inc_field, value)
    await document.store()
    return document


async def counter_reset(
    registry: SequenceRegistry, sequence_id: str, reference: Any = None
) -> int:
    """
    Reset the counters of a sequence, or only the one of ``reference``.

    Raises:
        UnknownSequenceError: If no sequence has that id.
    """
    return await registry.lookup(sequence_id).reset(reference)


def registry_of(model: type[Persistent] | Persistent) -> SequenceRegistry:
    registry: Optional[SequenceRegistry] = getattr(model, "__sequence_registry__", None)
    if registry is None:
        raise RuntimeError(f"No sequence has been attached to {model!r}")
    return registry


class Sequenced:
    """
    Mixin for persistent models with attached sequences.

    Examples:
        #>>> class Invoice(Sequenced, Persistent):
        #...     number: Optional[int] = None
        #>>> await invoice.set_next("invoice_number")
    """

    async def set_next(self, sequence_id: str):
        return await set_next(registry_of(self), self, sequence_id)

    @classmethod
    async def counter_reset(cls, sequence_id: str, reference: Any = None) -> int:
        return await counter_reset(registry_of(cls), sequence_id, reference)
