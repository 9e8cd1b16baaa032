import unittest

from mongomock_motor import AsyncMongoMockClient

from docseq.persistence import Persistence


class PersistenceTestCase(unittest.IsolatedAsyncioTestCase):
    """
    Runs every test inside a persistence session on a fresh in-memory
    database.
    """

    async def asyncSetUp(self):
        self.persistence = Persistence.from_client(AsyncMongoMockClient(), "test")
        self.session = await self.enterAsyncContext(self.persistence.session())

    def collection(self, name: str):
        return self.persistence.database.get_collection(name)
