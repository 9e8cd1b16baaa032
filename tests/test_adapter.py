from typing import Optional
from unittest.mock import patch

from pydantic import BaseModel, Field
from rich import print

from docseq.persistence import Persistent, StorageError, hooks_of, repository_of
from docseq.sequence import (
    ConfigurationError,
    Sequenced,
    SequenceRegistry,
    UnknownSequenceError,
    attach_sequence,
    counter_reset,
    registry_of,
    set_next,
)
from support import PersistenceTestCase


class Meta(BaseModel):
    number: Optional[int] = None
    label: Optional[str] = None


def make_models():
    """Fresh model classes, so hooks attached by a test do not leak."""

    class Simple(Sequenced, Persistent):
        __tablename__ = "simples"

        number: Optional[int] = None
        val: Optional[str] = None

    class Inhabitant(Sequenced, Persistent):
        __tablename__ = "inhabitants"

        country: str
        city: str
        inhabitant: Optional[int] = None

    class Manual(Sequenced, Persistent):
        __tablename__ = "manuals"

        name: str
        membercount: Optional[int] = None

    class Nested(Sequenced, Persistent):
        __tablename__ = "nesteds"

        meta: Meta = Field(default_factory=Meta)
        extra: dict = Field(default_factory=dict)

    return Simple, Inhabitant, Manual, Nested


class AttachSequenceTest(PersistenceTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.registry = SequenceRegistry()
        self.Simple, self.Inhabitant, self.Manual, self.Nested = make_models()

    async def test_documents_get_increasing_numbers(self):
        attach_sequence(self.Simple, self.registry, inc_field="number")

        docs = [self.Simple(val=str(i)) for i in range(5)]
        for doc in docs:
            await doc.store()

        assert [doc.number for doc in docs] == [1, 2, 3, 4, 5]

        stored = await repository_of(self.Simple).find().as_list()
        assert sorted(doc.number for doc in stored) == [1, 2, 3, 4, 5]

    async def test_reset_then_save(self):
        attach_sequence(self.Simple, self.registry, inc_field="number", id="simple_number")
        for _ in range(5):
            await self.Simple().store()

        await self.Simple.counter_reset("simple_number")

        doc = self.Simple()
        await doc.store()
        assert doc.number == 1

    async def test_updating_does_not_increment(self):
        attach_sequence(self.Simple, self.registry, inc_field="number")
        doc = self.Simple(val="a")
        await doc.store()

        doc.val = "b"
        await doc.store()

        assert doc.number == 1
        assert (await doc.ref.fetch()).number == 1

    async def test_reference_fields(self):
        attach_sequence(
            self.Inhabitant,
            self.registry,
            id="inhabitant_counter",
            inc_field="inhabitant",
            reference_fields=["country", "city"],
            start_seq=1,
        )

        a = self.Inhabitant(country="FR", city="Paris")
        b = self.Inhabitant(country="FR", city="Paris")
        c = self.Inhabitant(country="FR", city="Lyon")
        for doc in (a, b, c):
            await doc.store()

        assert (a.inhabitant, b.inhabitant, c.inhabitant) == (1, 2, 1)

    async def test_reset_of_one_reference(self):
        attach_sequence(
            self.Inhabitant,
            self.registry,
            id="inhabitant_counter",
            inc_field="inhabitant",
            reference_fields=["country", "city"],
        )
        for city in ["a", "a", "a", "b", "b", "b"]:
            await self.Inhabitant(country=city, city=city).store()

        reset = await counter_reset(
            self.registry, "inhabitant_counter", self.Inhabitant(country="a", city="a")
        )
        assert reset == 1

        a = self.Inhabitant(country="a", city="a")
        b = self.Inhabitant(country="b", city="b")
        await a.store()
        await b.store()

        assert (a.inhabitant, b.inhabitant) == (1, 4)

    async def test_reset_of_every_reference(self):
        attach_sequence(
            self.Inhabitant,
            self.registry,
            id="inhabitant_counter",
            inc_field="inhabitant",
            reference_fields=["country", "city"],
        )
        for city in ["a", "a", "b"]:
            await self.Inhabitant(country=city, city=city).store()

        await self.Inhabitant.counter_reset("inhabitant_counter")

        a = self.Inhabitant(country="a", city="a")
        b = self.Inhabitant(country="b", city="b")
        await a.store()
        await b.store()

        assert (a.inhabitant, b.inhabitant) == (1, 1)

    async def test_start_seq_and_reset(self):
        attach_sequence(self.Simple, self.registry, inc_field="number", start_seq=100)

        docs = [self.Simple() for _ in range(3)]
        for doc in docs:
            await doc.store()
        assert [doc.number for doc in docs] == [100, 101, 102]

        await counter_reset(self.registry, "number")

        doc = self.Simple()
        await doc.store()
        assert doc.number == 100

    async def test_undeclared_increment_field(self):
        attach_sequence(self.Manual, self.registry, inc_field="ticket")

        doc = self.Manual(name="t1")
        await doc.store()

        fetched = await doc.ref.fetch()
        assert fetched.ticket == 1

    async def test_nested_increment_field(self):
        attach_sequence(self.Nested, self.registry, inc_field="meta.number")
        attach_sequence(self.Nested, self.registry, inc_field="extra.count", start_seq=10)

        first, second = self.Nested(), self.Nested()
        await first.store()
        await second.store()

        assert (first.meta.number, second.meta.number) == (1, 2)
        assert (first.extra, second.extra) == ({"count": 10}, {"count": 11})

        fetched = await second.ref.fetch()
        assert fetched.meta.number == 2

    async def test_nested_reference_field(self):
        attach_sequence(
            self.Nested,
            self.registry,
            id="by_label",
            inc_field="meta.number",
            reference_fields="meta.label",
        )

        docs = [self.Nested(meta=Meta(label=label)) for label in ["x", "x", "y"]]
        for doc in docs:
            await doc.store()

        assert [doc.meta.number for doc in docs] == [1, 2, 1]

    async def test_parallel_hook_is_not_seen_by_next_hook(self):
        attach_sequence(self.Simple, self.registry, inc_field="number", parallel_hooks=True)
        seen = []

        async def peek(doc):
            seen.append(doc.number)

        hooks_of(self.Simple).on_before_insert(peek)

        doc = self.Simple()
        await doc.store()

        assert seen == [None]
        assert doc.number == 1

    async def test_sequential_hook_is_seen_by_next_hook(self):
        attach_sequence(self.Simple, self.registry, inc_field="number", parallel_hooks=False)
        seen = []

        async def peek(doc):
            seen.append(doc.number)

        hooks_of(self.Simple).on_before_insert(peek)

        await self.Simple().store()

        assert seen == [1]

    async def test_failing_allocation_does_not_store(self):
        for parallel in (True, False):
            registry = SequenceRegistry()
            Simple, *_ = make_models()
            sequence = attach_sequence(
                Simple, registry, inc_field="number", parallel_hooks=parallel
            )

            with patch.object(
                sequence.store, "upsert_no_match", side_effect=StorageError("Incrementing error")
            ):
                doc = Simple()
                with self.assertRaises(StorageError):
                    await doc.store()

            assert doc.number is None
            assert doc.id is None
            assert await repository_of(Simple).count() == 0

    async def test_upsert_allocates_only_on_insert(self):
        attach_sequence(self.Simple, self.registry, inc_field="number")

        assert await self.Simple.upsert({"val": "a"})
        assert await self.Simple.upsert({"val": "b"})
        assert not await self.Simple.upsert({"val": "a"}, number=50)

        sequence = self.registry.lookup("number")
        assert await sequence.current() == 2

        stored = {doc.val: doc.number for doc in await repository_of(self.Simple).find().as_list()}
        print(stored)
        assert stored == {"a": 50, "b": 2}

    async def test_upsert_uses_the_reference_of_the_inserted_document(self):
        attach_sequence(
            self.Inhabitant,
            self.registry,
            id="inhabitant_counter",
            inc_field="inhabitant",
            reference_fields=["country", "city"],
        )
        await self.Inhabitant(country="FR", city="Paris").store()

        await self.Inhabitant.upsert({"country": "FR", "city": "Paris", "name": "x"})
        await self.Inhabitant.upsert({"country": "BE"}, city="Brussels")

        stored = await repository_of(self.Inhabitant).find().as_list()
        assert sorted((doc.city, doc.inhabitant) for doc in stored) == [
            ("Brussels", 1),
            ("Paris", 1),
            ("Paris", 2),
        ]


class ManualSequenceTest(PersistenceTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.registry = SequenceRegistry()
        _, _, self.Manual, _ = make_models()
        self.sequence = attach_sequence(
            self.Manual,
            self.registry,
            id="member_counter",
            inc_field="membercount",
            disable_hooks=True,
        )
        for name in ("t1", "t2"):
            await self.Manual(name=name).store()

    async def find(self, name):
        (doc,) = await repository_of(self.Manual).find({"name": name}).as_list()
        return doc

    async def test_not_incremented_on_save(self):
        doc = await self.find("t1")

        assert doc.membercount is None

    async def test_incremented_manually(self):
        t1 = await self.find("t1")
        t2 = await self.find("t2")

        await t1.set_next("member_counter")
        await set_next(self.registry, t2, "member_counter")

        assert (t1.membercount, t2.membercount) == (1, 2)
        assert (await self.find("t2")).membercount == 2

    async def test_manual_increment_of_a_new_document(self):
        doc = self.Manual(name="t3")

        await doc.set_next("member_counter")

        assert doc.id is not None
        assert (await self.find("t3")).membercount == 1

    async def test_unknown_sequence(self):
        doc = await self.find("t1")

        with self.assertRaises(UnknownSequenceError):
            await doc.set_next("wrong_sequence")

        with self.assertRaises(UnknownSequenceError):
            await self.Manual.counter_reset("wrong_sequence")

    async def test_failing_manual_increment_does_not_store(self):
        doc = await self.find("t1")

        with patch.object(
            self.sequence.store, "upsert_no_match", side_effect=StorageError("Incrementing error")
        ):
            with self.assertRaises(StorageError):
                await doc.set_next("member_counter")

        assert doc.membercount is None
        assert (await self.find("t1")).membercount is None

    async def test_registry_of(self):
        assert registry_of(self.Manual) is self.registry
        assert registry_of(await self.find("t1")) is self.registry


class ConfigurationTest(PersistenceTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.registry = SequenceRegistry()
        self.Simple, self.Inhabitant, self.Manual, self.Nested = make_models()

    def test_increment_field_must_be_an_integer(self):
        with self.assertRaises(ConfigurationError):
            attach_sequence(self.Simple, self.registry, inc_field="val")
        with self.assertRaises(ConfigurationError):
            attach_sequence(self.Simple, self.registry, inc_field="id")
        with self.assertRaises(ConfigurationError):
            attach_sequence(self.Nested, self.registry, inc_field="meta.label")

        assert len(self.registry) == 0

    def test_reference_fields_need_an_id(self):
        with self.assertRaises(ConfigurationError):
            attach_sequence(
                self.Inhabitant,
                self.registry,
                inc_field="inhabitant",
                reference_fields=["country", "city"],
            )

    def test_invalid_options(self):
        with self.assertRaises(ConfigurationError):
            attach_sequence(self.Simple, self.registry, inc_field="number", inc_amount=-1)
        with self.assertRaises(ConfigurationError):
            attach_sequence(self.Simple, self.registry, inc_field="number", colection_name="x")

    async def test_duplicated_sequence_keeps_the_first(self):
        first = attach_sequence(self.Simple, self.registry, inc_field="number")

        with self.assertRaises(ConfigurationError):
            attach_sequence(self.Manual, self.registry, id="number", inc_field="membercount")

        assert self.registry.lookup("number") is first
        assert len(hooks_of(self.Manual).before_insert) == 0

        doc = self.Simple()
        await doc.store()
        assert doc.number == 1

    async def test_shared_non_exclusive_sequence(self):
        first = attach_sequence(self.Simple, self.registry, inc_field="number", exclusive=False)
        attach_sequence(
            self.Manual, self.registry, id="number", inc_field="membercount", exclusive=False
        )

        simple = self.Simple()
        manual = self.Manual(name="m")
        await simple.store()
        await manual.store()

        assert self.registry.lookup("number") is first
        assert (simple.number, manual.membercount) == (1, 2)
