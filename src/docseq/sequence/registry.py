from typing import Iterator

from docseq.logging import get_logger
from docseq.persistence.counter import CounterStore
from docseq.sequence.engine import Sequence
from docseq.sequence.errors import ConfigurationError, UnknownSequenceError

logger = get_logger(__name__)


class SequenceRegistry:
    """
    The sequences known by an application, by id, and the counter stores
    they share.
    """

    def __init__(self):
        self._sequences: dict[str, Sequence] = {}
        self._stores: dict[str, CounterStore] = {}

    def __contains__(self, sequence_id: str) -> bool:
        return self.exists(sequence_id)

    def __iter__(self) -> Iterator[Sequence]:
        return iter(self._sequences.values())

    def __len__(self) -> int:
        return len(self._sequences)

    def register(self, sequence: Sequence) -> Sequence:
        """
        Add a sequence.

        Returns:
            Sequence: The registered sequence. For a non exclusive sequence
            whose id is already taken, that is the first one.

        Raises:
            ConfigurationError: If the id is taken and the sequence is exclusive.
        """
        registered = self._sequences.get(sequence.id)
        if registered is None:
            self._sequences[sequence.id] = sequence
            logger.debug("Registered %r", sequence)
            return sequence

        if sequence.options.exclusive:
            raise ConfigurationError(f"Counter already defined for field {sequence.id!r}")

        return registered

    def lookup(self, sequence_id: str) -> Sequence:
        try:
            return self._sequences[sequence_id]
        except KeyError:
            raise UnknownSequenceError(sequence_id) from None

    def exists(self, sequence_id: str) -> bool:
        return sequence_id in self._sequences

    def store_for(self, collection_name: str) -> CounterStore:
        """The counter store of a collection, shared by all its sequences."""
        store = self._stores.get(collection_name)
        if store is None:
            store = self._stores[collection_name] = CounterStore(collection_name)
        return store

    async def init_db(self):
        """Create the indexes of every counter collection in use."""
        for store in self._stores.values():
            await store.init_db()
