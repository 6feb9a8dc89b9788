"""
Awaitable facade over a mongomock database for engine tests.

Exposes the slice of the Motor API the engine uses (awaitable collection
methods, cursors with to_list / async iteration). Sessions are accepted and
ignored, which matches running the engine with MONGO_TRANSACTIONS=false.
Every awaitable call yields to the event loop once, as a round trip to the
server would, so tasks started together really interleave.
"""

import asyncio

import mongomock


class InMemoryCursor:

    def __init__(self, cursor):
        self._cursor = cursor
        self._iterator = None

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count):
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = list(self._cursor)
        return docs if length is None else docs[:length]

    def __aiter__(self):
        self._iterator = iter(self._cursor)
        return self

    async def __anext__(self):
        await asyncio.sleep(0)
        try:
            return next(self._iterator)
        except StopIteration:
            raise StopAsyncIteration


class InMemoryCollection:

    def __init__(self, collection):
        self._collection = collection

    @property
    def name(self):
        return self._collection.name

    def find(self, *args, session=None, **kwargs):
        return InMemoryCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, session=None, **kwargs):
        return InMemoryCursor(self._collection.aggregate(pipeline, **kwargs))

    async def find_one(self, *args, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.find_one(*args, **kwargs)

    async def insert_one(self, document, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.insert_one(document, **kwargs)

    async def insert_many(self, documents, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.insert_many(documents, **kwargs)

    async def update_one(self, query, update, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.update_one(query, update, **kwargs)

    async def update_many(self, query, update, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.update_many(query, update, **kwargs)

    async def find_one_and_update(self, query, update, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.find_one_and_update(query, update, **kwargs)

    async def count_documents(self, query, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.count_documents(query, **kwargs)

    async def delete_one(self, query, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.delete_one(query, **kwargs)

    async def create_index(self, keys, session=None, **kwargs):
        await asyncio.sleep(0)
        return self._collection.create_index(keys, **kwargs)


class InMemoryDatabase:

    def __init__(self, name: str = "land_sales_test"):
        self._db = mongomock.MongoClient()[name]
        self._collections = {}

    @property
    def name(self):
        return self._db.name

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(self._db[name])
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]
