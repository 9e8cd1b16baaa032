from docseq.persistence import Persistence, Persistent, StorageError
from docseq.sequence import (
    ConfigurationError,
    Sequence,
    Sequenced,
    SequenceRegistry,
    UnknownSequenceError,
    attach_sequence,
    counter_reset,
    set_next,
)


class SessionMiddleware:
    """ASGI middleware running every call inside a persistence session."""

    def __init__(self, app, persistence: Persistence):
        self.app = app
        self.persistence = persistence

    async def __call__(self, scope, receive, send):
        async with self.persistence.session():
            return await self.app(scope, receive, send)
