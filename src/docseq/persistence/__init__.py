from docseq.persistence.core import (
    Cursor,
    Id,
    NotFoundError,
    Persistence,
    PersistenceError,
    Persistent,
    RefBase,
    RepositoryBase,
    StorageError,
    current_session,
    hooks_of,
    persistent_cls_of,
    repository_of,
)
from docseq.persistence.counter import CounterRecord, CounterStore, UpsertOutcome
from docseq.persistence.hooks import LifecycleHooks, UpsertDraft
