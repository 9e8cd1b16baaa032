from enum import Enum
from typing import Any, Mapping, Optional

from bson.errors import BSONError
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from docseq.logging import get_logger
from docseq.persistence.core import RepositoryBase, StorageError, current_session

logger = get_logger(__name__)

ReferenceValue = Optional[dict[str, Any]]


class CounterRecord(BaseModel):
    """
    Persisted state of one counter: the last value issued for a
    (sequence id, reference value) pair.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sequence_id: str = Field(alias="id")
    reference_value: ReferenceValue = None
    seq: Optional[int] = None


class UpsertOutcome(Enum):
    CREATED = "created"
    EXISTING = "existing"
    # A concurrent upsert of the same record won the unique index
    RACE_LOST = "race_lost"


class CounterStore(RepositoryBase[CounterRecord]):
    """
    Collection of counter records, unique on ``(id, reference_value)``.

    Every mutation is a single atomic mongo operation; nothing is read and
    written back by the client. Driver and encoding failures are raised as
    `StorageError`.
    """

    __persistent__ = CounterRecord

    def __init__(self, tablename: str = "counters"):
        super().__init__(tablename)
        # held strongly so an id is never reused by another database
        self._indexed: dict[int, Any] = {}

    async def init_db(self):
        await self._create_index(
            [("id", ASCENDING), ("reference_value", ASCENDING)], unique=True
        )
        database = current_session().persistence.database
        self._indexed[id(database)] = database

    async def _ensure_index(self):
        database = current_session().persistence.database
        if self._indexed.get(id(database)) is not database:
            await self.init_db()

    @staticmethod
    def key(sequence_id: str, reference_value: ReferenceValue) -> dict[str, Any]:
        return {"id": sequence_id, "reference_value": reference_value}

    async def upsert_no_match(
        self,
        sequence_id: str,
        reference_value: ReferenceValue,
        start_seq: int,
    ) -> UpsertOutcome:
        """
        Insert the counter record if it is absent, otherwise do nothing.

        The record is inserted with ``seq = start_seq``.
        """
        key = self.key(sequence_id, reference_value)
        try:
            await self._ensure_index()
            result = await self._update_one(
                key, {"$setOnInsert": {"seq": start_seq}}, upsert=True
            )
        except DuplicateKeyError:
            logger.debug("Counter %s %r created concurrently", sequence_id, reference_value)
            return UpsertOutcome.RACE_LOST
        except (PyMongoError, BSONError) as e:
            raise StorageError(f"Cannot create counter {sequence_id!r}: {e}") from e

        if result.upserted_id is not None:
            logger.debug("Counter %s %r created at %d", sequence_id, reference_value, start_seq)
            return UpsertOutcome.CREATED
        return UpsertOutcome.EXISTING

    async def atomic_increment(
        self,
        sequence_id: str,
        reference_value: ReferenceValue,
        amount: int,
    ) -> Optional[CounterRecord]:
        """
        Increment ``seq`` of an existing record and return it updated.

        Returns:
            CounterRecord | None: None if the record does not exist.
        """
        try:
            raw = await self._find_one_and_update(
                self.key(sequence_id, reference_value),
                {"$inc": {"seq": amount}},
                upsert=False,
                return_document=ReturnDocument.AFTER,
            )
        except (PyMongoError, BSONError) as e:
            raise StorageError(f"Cannot increment counter {sequence_id!r}: {e}") from e

        return None if raw is None else self.type_adapter.validate_python(raw)

    async def bulk_set_field(self, filter: Mapping[str, Any], field: str, value: Any) -> int:
        """Set ``field`` on every record matching ``filter``; returns the matched count."""
        try:
            result = await self._update_many(filter, {"$set": {field: value}})
        except (PyMongoError, BSONError) as e:
            raise StorageError(f"Cannot update counters {dict(filter)!r}: {e}") from e
        return result.matched_count

    async def fetch(
        self, sequence_id: str, reference_value: ReferenceValue
    ) -> Optional[CounterRecord]:
        collection, session = self._get_collection_and_session()
        try:
            raw = await collection.find_one(self.key(sequence_id, reference_value), **session)
        except (PyMongoError, BSONError) as e:
            raise StorageError(f"Cannot read counter {sequence_id!r}: {e}") from e
        return None if raw is None else self.type_adapter.validate_python(raw)
