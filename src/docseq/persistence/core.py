from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from typing import (
    Any,
    Callable,
    ClassVar,
    Generic,
    Literal,
    Mapping,
    Optional,
    Self,
    TypeVar,
)

from bson import ObjectId
from bson.errors import InvalidId
from inflector import English
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pydantic import BaseModel, ConfigDict, Field, MongoDsn, TypeAdapter
from pydantic_core import core_schema

from docseq.persistence.hooks import LifecycleHooks, UpsertDraft


class PersistenceError(Exception):
    pass


class NotFoundError(PersistenceError, LookupError):
    pass


class StorageError(PersistenceError):
    """A storage operation failed (the original driver error is the cause)."""


_english_inflector = English()

_persistence_session: ContextVar[Optional[Persistence.Session]] = ContextVar(
    f"{__name__}._persistence_session",
    default=None,
)


@dataclass
class Persistence:
    """
    The persistence layer: a motor client and the database documents and
    counters live in.
    """

    class Settings(BaseModel):
        """Persistence layer settings"""

        dsn: Optional[MongoDsn] = Field(None, title="Mongo database DSN")
        database: Optional[str] = Field("test", title="Name of the database")
        causal_consistency: bool = Field(
            True, title="Run every persistence session inside a client session"
        )

    client: AsyncIOMotorClient
    database: AsyncIOMotorDatabase
    causal_consistency: bool = True

    @classmethod
    def default(cls):
        """Create a `Persistence` instance with default settings."""
        return cls.from_settings(Persistence.Settings())

    @classmethod
    def from_dsn_and_db(cls, dsn: str, db: str):
        """
        Create a `Persistence` instance from the given DSN and database name.

        Args:
            dsn (str): The MongoDB connection string.
            db (str): The name of the database.
        """
        client = AsyncIOMotorClient(dsn)
        return cls(client=client, database=client.get_database(db))

    @classmethod
    def from_settings(cls, settings: Persistence.Settings):
        """
        Create a `Persistence` instance from the given settings.

        Args:
            settings (Persistence.Settings): The persistence settings.
        """
        dsn = None if settings.dsn is None else str(settings.dsn)
        client = AsyncIOMotorClient(dsn)
        return cls(
            client=client,
            database=client.get_database(settings.database),
            causal_consistency=settings.causal_consistency,
        )

    @classmethod
    def from_client(cls, client, db: str, causal_consistency: bool = False):
        """
        Wrap an already built motor compatible client.

        Client sessions are off by default here, which is what in-memory
        clients used by the test-suite support.
        """
        return cls(
            client=client,
            database=client.get_database(db),
            causal_consistency=causal_consistency,
        )

    @dataclass
    class Session:
        """Persistence layer context.

        Attributes:
            persistence (Persistence): The persistence layer instance.
            _inner (AsyncIOMotorClientSession | None): The underlying MongoDB
                client session, if the layer uses them.
        """

        persistence: Persistence
        _inner: Optional[AsyncIOMotorClientSession]

        @property
        def kwargs(self) -> dict[str, Any]:
            return {} if self._inner is None else {"session": self._inner}

    @asynccontextmanager
    async def session(self):
        """
        Enter the persistence session context.

        Yields:
            Persistence.Session: The persistence session.
        """
        if not self.causal_consistency:
            async with self._publish(None) as session:
                yield session
            return

        async with await self.client.start_session(causal_consistency=True) as inner:
            async with self._publish(inner) as session:
                yield session

    @asynccontextmanager
    async def _publish(self, inner: Optional[AsyncIOMotorClientSession]):
        session = self.Session(self, inner)
        session_token = _persistence_session.set(session)
        try:
            yield session
        finally:
            _persistence_session.reset(session_token)


def current_session() -> Persistence.Session:
    """
    Returns the current persistence session.

    Raises:
        RuntimeError: If no persistence context has been established.
            You must perform 'async with persistence.session()' to be able
            to use the persistence layer functions.
    """
    session = _persistence_session.get()
    if session is None:
        raise RuntimeError(
            "No persistence context has been established. "
            "You must perform 'async with persistence.session()' "
            "to be able to use the persistence layer functions."
        )
    return session


class Id(ObjectId):
    """
    Document identifier, an `ObjectId` that pydantic can validate and dump.

    Attributes:
        created_at: The creation timestamp of the identifier.
        as_filter: The identifier formatted as a filter for database queries.
    """

    def __init__(self, *args):
        try:
            super().__init__(*args)
        except InvalidId as e:
            raise ValueError(*e.args) from InvalidId

    @classmethod
    def __get_pydantic_core_schema__(cls, *_):
        return core_schema.json_or_python_schema(
            # JSON
            core_schema.no_info_plain_validator_function(
                cls.from_str,
                serialization=core_schema.plain_serializer_function_ser_schema(
                    lambda self: str(self)  # as str
                ),
            ),
            # PYTHON
            core_schema.no_info_plain_validator_function(
                cls.from_oid,
                serialization=core_schema.plain_serializer_function_ser_schema(
                    lambda self: self  # as ObjectId
                ),
            ),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, _, handler):
        return handler(core_schema.str_schema())

    @classmethod
    def new(cls):
        return cls()

    @classmethod
    def from_str(cls, val: str):
        assert isinstance(val, str), f"from_str receive {val}"
        return cls(val)

    @classmethod
    def from_oid(cls, val: Id | ObjectId | str):
        return val if isinstance(val, cls) else cls(val)

    @property
    def created_at(self):
        return self.generation_time

    @property
    def as_filter(self):
        return {"_id": self}


class Persistent(BaseModel):
    """Base class of a persistent document.

    Every subclass gets its own `Repository` (the collection is the
    tableized class name unless ``__tablename__`` is given), its own `Ref`
    class and its own `LifecycleHooks`, inherited from the base classes.

    Fields not declared by the model are kept as extra fields, which lets
    plugins store values the schema does not know about.

    Attributes:
        id (Optional[Id]): Unique object identifier.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    Id: ClassVar[type[Id]]

    Ref: ClassVar[type[RefBase[Self]]]

    Repository: ClassVar[type[RepositoryBase[Self]]]

    id: Optional[Id] = Field(None, title="Unique object Id", alias="_id")

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)

        rep_bases = tuple(
            {
                getattr(base, "Repository"): None
                for base in cls.__mro__
                if hasattr(base, "Repository")
            }.keys()
        )

        rep_cls = type(
            "Repository",
            rep_bases,
            {
                "__module__": cls.__module__,
                "__qualname__": f"{cls.__qualname__}.Repository",
                "__persistent__": cls,
            },
        )

        tablename = cls.__dict__.get("__tablename__") or _english_inflector.tableize(
            cls.__name__
        )
        repository = rep_cls(tablename)

        ref_cls = type(
            "Ref",
            (RefBase,),
            {
                "__module__": cls.__module__,
                "__qualname__": f"{cls.__qualname__}.Ref",
                "__persistent__": cls,
                "__repository__": repository,
            },
        )

        parent_hooks = next(
            (base.__hooks__ for base in cls.__mro__[1:] if "__hooks__" in base.__dict__),
            None,
        )

        setattr(cls, "Repository", rep_cls)
        setattr(cls, "Ref", ref_cls)

        setattr(cls, "__repository__", repository)
        setattr(cls, "__hooks__", LifecycleHooks(parent_hooks))

    @property
    def is_new(self) -> bool:
        return self.id is None

    @property
    def ref(self) -> RefBase[Self]:
        """Return a reference to the object."""
        return type(self).Ref(self.id)

    async def store(self) -> RefBase[Self]:
        """Persist the object in the database.

        New objects (without id) are inserted, running the before-insert
        hooks first; any other object is updated.

        Returns:
            RefBase[Self]: A reference to the persisted object.
        """
        if self.is_new:
            await self.insert()
        else:
            await self.update()

        return self.ref

    async def insert(self):
        assert self.id is None, f"{type(self)} already inserted with id '{self.id}'"
        await hooks_of(self).run_before_insert(self)
        await repository_of(self).insert_obj(self)

    async def update(self):
        assert self.id is not None, f"{type(self)} does not exists with id '{self.id}'"
        await repository_of(self).update_obj(self)

    @classmethod
    async def upsert(cls, filter: Mapping[str, Any], **values) -> bool:
        """
        Update the document matching ``filter`` or insert a new one.

        When nothing matches, the before-upsert-insert hooks run and the
        fields they add are written with ``$setOnInsert``.

        Returns:
            bool: True if a new document was inserted.

        Examples:
            #>>> await Invoice.upsert({"code": "A-1"}, total=10)
        """
        return await repository_of(cls).upsert(filter, values)


P = TypeVar("P", bound=Persistent)


class RefBase(Generic[P]):
    """Base class for the Persistent.Ref classes.

    A Ref identifies a persistent object and operates on it remotely without
    materializing it in memory.
    """

    __slots__: tuple[Literal["_id"]] = ("_id",)
    __persistent__: type[P]
    __repository__: RepositoryBase[P]
    __qualname__ = "Persistent.Ref"
    _id: Id

    @classmethod
    def __get_pydantic_core_schema__(cls, *_):
        return core_schema.json_or_python_schema(
            # JSON
            core_schema.no_info_plain_validator_function(
                cls.from_str,
                serialization=core_schema.plain_serializer_function_ser_schema(
                    lambda self: str(self._id)  # as str
                ),
            ),
            # PYTHON
            core_schema.no_info_plain_validator_function(
                cls.from_id,
                serialization=core_schema.plain_serializer_function_ser_schema(
                    lambda self: self._id  # as ObjectId
                ),
            ),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, _, handler):
        return handler(core_schema.str_schema())

    def __repr__(self):
        return f"{type(self).__qualname__}({self._id})"

    @classmethod
    def from_str(cls, value: str) -> Self:
        assert isinstance(value, str)
        return cls(Id.from_str(value))

    @classmethod
    def from_id(cls, value: Id | ObjectId):
        if isinstance(value, RefBase):
            value = value.id
        return cls(Id.from_oid(value))

    def __init__(self, id: Id):
        if not isinstance(id, Id):
            raise TypeError(f"Bad id type {type(id)}")
        self._id = id

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, type(self)):
            return self._id == other._id
        return False

    def __hash__(self) -> int:
        return hash(self._id)

    @property
    def created_at(self) -> datetime:
        return self._id.generation_time

    @property
    def id(self):
        return self._id

    async def fetch(self) -> P:
        """Fetch the referenced object, raising `NotFoundError` if missing."""
        return await repository_of(self).fetch_by_id(self._id)

    async def delete(self):
        return await repository_of(self).delete_by_id(self._id)

    async def exists(self) -> bool:
        count = await repository_of(self).count(self._id.as_filter)
        return count == 1

    async def upsert(self, **values) -> bool:
        """
        Upsert the referenced document.

        Returns:
            bool: True if the document did not exist and was inserted.

        Examples:
            #>>> await invoice_ref.upsert(**{"customer.name": "John"})
        """
        return await repository_of(self).upsert(self._id.as_filter, values)


class RepositoryBase(Generic[P]):
    """
    Base class for repositories that interact with a persistent storage.

    Args:
        tablename (str): The name of the collection in the persistent storage.

    Attributes:
        tablename (str): The name of the collection in the persistent storage.
        type_adapter (TypeAdapter): The type adapter used for serializing and deserializing objects.
    """

    Cursor: ClassVar[type[Cursor]]

    __persistent__: type[P]
    __qualname__ = "Persistent.Repository"

    def __init__(self, tablename: str):
        self.tablename = tablename

    @cached_property
    def type_adapter(self):
        return TypeAdapter(persistent_cls_of(self))

    def _get_collection_and_session(self):
        session = current_session()
        col = session.persistence.database.get_collection(self.tablename)
        return col, session.kwargs

    async def _create_index(self, *args, **kwargs):
        """Creates an index on the collection."""
        collection, session = self._get_collection_and_session()
        await collection.create_index(*args, **session, **kwargs)

    async def _find_one_and_update(self, *args, **kwargs) -> Mapping[str, Any] | None:
        collection, session = self._get_collection_and_session()
        return await collection.find_one_and_update(*args, **session, **kwargs)

    async def _update_one(self, *args, **kwargs):
        collection, session = self._get_collection_and_session()
        result = await collection.update_one(*args, **session, **kwargs)
        assert result.acknowledged
        return result

    async def _update_many(self, *args, **kwargs):
        collection, session = self._get_collection_and_session()
        result = await collection.update_many(*args, **session, **kwargs)
        assert result.acknowledged
        return result

    async def insert_obj(self, obj: P):
        "Insert the object and assign it the new id"
        collection, session = self._get_collection_and_session()
        raw = self.type_adapter.dump_python(obj, by_alias=True)
        if raw["_id"] is None:
            del raw["_id"]

        result = await collection.insert_one(raw, **session)

        obj.id = Id(result.inserted_id)

    async def fetch_by_id(self, id: Id, not_found_error=True) -> P | None:
        """
        Read a document from the collection by its ID.

        Args:
            id (Id): The ID of the document to fetch.
            not_found_error (bool, optional): Whether to raise a NotFoundError if the document is not found.
                                                Defaults to True.
        """
        collection, session = self._get_collection_and_session()
        raw = await collection.find_one(id.as_filter, **session)

        if raw is None:
            if not_found_error:
                raise NotFoundError(id)
            return None

        return self.type_adapter.validate_python(raw)

    async def update_obj(self, obj: P):
        """
        Update an object in the database.

        Raises:
            ValueError: If the object has not been inserted yet.
            NotFoundError: If the object's reference is not found in the database.
        """
        if obj.id is None:
            raise ValueError("You are trying to update a non-inserted object")

        raw = self.type_adapter.dump_python(obj, by_alias=True, exclude={"id"})
        result = await self._update_one(obj.id.as_filter, {"$set": raw})
        if result.matched_count != 1:
            raise NotFoundError(obj.ref)

    async def delete_by_id(self, id: Id, not_found_error=True):
        collection, session = self._get_collection_and_session()

        result = await collection.delete_one(id.as_filter, **session)
        if not_found_error and result.deleted_count != 1:
            raise NotFoundError(id)

    async def count(self, filter: Mapping[str, Any] = {}):
        collection, session = self._get_collection_and_session()
        return await collection.count_documents(filter, **session)

    def find(self, filter: Mapping[str, Any] = {}) -> Cursor[P]:
        """Find the documents matching ``filter``."""
        collection, session = self._get_collection_and_session()
        inner_cursor = collection.find(filter, **session)
        return self.Cursor(inner_cursor, self.type_adapter.validate_python)

    async def upsert(self, filter: Mapping[str, Any], values: Mapping[str, Any]) -> bool:
        """
        Update the document matching ``filter`` or insert it.

        A matching document is updated first with a plain (non upsert)
        update, so the before-upsert-insert hooks only run when an insert is
        really about to happen. If a concurrent writer inserts the document
        in between, the final upsert matches it and the hook fields are
        ignored by ``$setOnInsert``.

        Returns:
            bool: True if a document was inserted.
        """
        if values:
            result = await self._update_one(filter, {"$set": dict(values)})
            if result.matched_count:
                return False
        elif await self.count(filter):
            return False

        draft = UpsertDraft(filter, values)
        await hooks_of(self).run_before_upsert_insert(draft)

        # $set wins over hook fields on the same path, mongo rejects both
        on_insert = {
            path: value
            for path, value in draft.on_insert.items()
            if not any(_paths_overlap(path, key) for key in values)
        }

        update: dict[str, Any] = {}
        if values:
            update["$set"] = dict(values)
        if on_insert:
            update["$setOnInsert"] = on_insert
        if not update:
            raise ValueError("Nothing to upsert: no values and no insert fields")

        result = await self._update_one(filter, update, upsert=True)
        return result.upserted_id is not None


def _paths_overlap(a: str, b: str) -> bool:
    return a == b or a.startswith(f"{b}.") or b.startswith(f"{a}.")


class Cursor(Generic[P]):
    """
    Represents a cursor for iterating over a collection of items.

    Args:
        _inner: The inner driver cursor.
        item_parser (Callable[[Any], P]): A callable function used to parse each item returned by the cursor.
    """

    __slots__ = "_inner", "_item_parser"

    def __init__(self, _inner: Any, item_parser: Callable[[Any], P]):
        self._inner = _inner
        self._item_parser = item_parser

    def __aiter__(self):
        return self

    async def __anext__(self) -> P:
        raw = await anext(self._inner)
        return self._item_parser(raw)

    def skip(self, *args, **kwargs) -> Self:
        cls = type(self)
        return cls(self._inner.skip(*args, **kwargs), self._item_parser)

    def limit(self, *args, **kwargs) -> Self:
        cls = type(self)
        return cls(self._inner.limit(*args, **kwargs), self._item_parser)

    async def as_list(self):
        return [x async for x in self]


Persistent.Id = Id
Persistent.Ref = RefBase
Persistent.Repository = RepositoryBase
RepositoryBase.Cursor = Cursor


def repository_of(
    value: P | type[P] | RefBase[P] | type[RefBase[P]],
) -> RepositoryBase[P]:
    """
    Returns the repository instance of P, given a P or P.Ref type or instance.
    """
    return value.__repository__


def hooks_of(
    value: P | type[P] | RepositoryBase[P],
) -> LifecycleHooks:
    """
    Returns the lifecycle hooks of P, given a P type or instance or its repository.

    Examples:
        #>>> hooks_of(Invoice).on_before_insert(check_invoice, parallel=False)
    """
    if isinstance(value, RepositoryBase):
        value = persistent_cls_of(value)
    return value.__hooks__


def persistent_cls_of(
    value: RefBase[P] | type[RefBase[P]] | RepositoryBase[P] | type[RepositoryBase[P]],
) -> type[P]:
    """
    Returns the persistent class type given a repository or reference type or instance.
    """
    return value.__persistent__
