from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SequenceOptions(BaseModel):
    """Options accepted when a sequence is attached to a persistent model."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    inc_field: str = Field(..., min_length=1, title="Dotted path of the incremented field")
    id: Optional[str] = Field(
        None,
        min_length=1,
        title="Sequence id, mandatory when reference fields are used",
    )
    reference_fields: Optional[tuple[str, ...]] = Field(
        None, title="Fields whose values partition the counter"
    )
    disable_hooks: bool = Field(False, title="Only allocate through set_next")
    collection_name: str = Field("counters", min_length=1, title="Counters collection")
    parallel_hooks: bool = Field(True, title="Run the hook in parallel with the others")
    start_seq: int = Field(1, title="First value of a new counter")
    inc_amount: int = Field(1, gt=0, title="Increment step")
    exclusive: bool = Field(True, title="Refuse a second sequence with the same id")
    retries: int = Field(1, ge=1, title="Retries of the increment when the counter is not visible")

    @field_validator("reference_fields", mode="before")
    @classmethod
    def _as_tuple(cls, value):
        if isinstance(value, str):
            return (value,)
        return value

    @field_validator("reference_fields")
    @classmethod
    def _canonical(cls, value: Optional[tuple[str, ...]]):
        if not value:
            return None

        fields = tuple(sorted(set(value)))
        for field in fields:
            overlapping = [f for f in fields if f.startswith(f"{field}.")]
            if overlapping:
                raise ValueError(f"Reference field {field!r} overlaps {overlapping}")
        return fields

    @model_validator(mode="after")
    def _id_with_references(self):
        if self.reference_fields and self.id is None:
            raise ValueError("Cannot use reference fields without specifying an id")
        return self

    @property
    def uses_reference(self) -> bool:
        return self.reference_fields is not None

    @property
    def sequence_id(self) -> str:
        return self.id or self.inc_field

    @property
    def reset_seq(self) -> int:
        """Value stored by a reset, so that the next allocation is ``start_seq``."""
        return self.start_seq - self.inc_amount
