import asyncio
from dataclasses import dataclass, field
from typing import List
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from pymongo.errors import BulkWriteError, ConnectionFailure

import repository.store as store_mod
from models.document_base import DocumentBase
from repository.async_repository import AsyncMongoDbContext
from repository.exceptions import PredicateTranslationError, StoreConfigurationError
from repository.filters import Field, where
from repository.store import AsyncMongoDbClient


@dataclass
class Person(DocumentBase):
    name: str = ''
    tags: List[str] = field(default_factory=list)


def make_context(fake_collection):
    fake_db = MagicMock()
    fake_db.__getitem__.return_value = fake_collection
    fake_client = MagicMock()
    fake_client.__getitem__.return_value = fake_db
    return AsyncMongoDbContext(AsyncMongoDbClient(fake_client, 'testdb')), fake_db


def cursor_returning(documents):
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=documents)
    cursor.limit.return_value = cursor
    return cursor


def test_async_store_rejects_bad_configuration():
    with pytest.raises(StoreConfigurationError):
        AsyncMongoDbClient(None, 'db')
    with pytest.raises(StoreConfigurationError):
        AsyncMongoDbClient('mongodb://localhost:27017', '')


@pytest.mark.parametrize('uri', [
    'mongodb://localhost:99999',
    'mongodb://user@name:pw@localhost',
])
def test_async_store_rejects_malformed_uri(uri):
    with pytest.raises(StoreConfigurationError):
        AsyncMongoDbClient(uri, 'db')


def test_async_store_builds_client_from_uri(monkeypatch):
    fake_client = MagicMock()
    monkeypatch.setattr(store_mod, 'create_async_client', lambda uri, timeout_ms: fake_client)
    store = AsyncMongoDbClient('mongodb://example:27017', 'shop')
    assert store.client is fake_client
    fake_client.__getitem__.assert_called_with('shop')


@pytest.mark.asyncio
async def test_async_store_close_awaits_owned_client_only(monkeypatch):
    owned = MagicMock()
    owned.close = AsyncMock()
    monkeypatch.setattr(store_mod, 'create_async_client', lambda uri, timeout_ms: owned)
    await AsyncMongoDbClient('mongodb://example:27017', 'shop').close()
    owned.close.assert_awaited_once()

    borrowed = MagicMock()
    borrowed.close = AsyncMock()
    await AsyncMongoDbClient(borrowed, 'shop').close()
    borrowed.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_async_ping():
    context, fake_db = make_context(MagicMock())
    fake_db.command = AsyncMock(return_value={'ok': 1})
    assert await context.store.ping() is True
    fake_db.command = AsyncMock(side_effect=ConnectionFailure('down'))
    assert await context.store.ping() is False


@pytest.mark.asyncio
async def test_async_find_and_select():
    fake_collection = MagicMock()
    fake_collection.find_one = AsyncMock(return_value={'_id': 1, 'name': 'a', 'extra': 1})
    fake_collection.find.return_value = cursor_returning([{'_id': 1, 'name': 'a'}])
    context, _ = make_context(fake_collection)

    assert await context.find('people', Person, Field('_id') == 1) == Person(id=1, name='a')
    assert await context.select('people', Person, Field('name') == 'a') == [Person(id=1, name='a')]
    fake_collection.find.assert_called_with({'name': 'a'})

    assert len(await context.select_all('people', Person)) == 1
    fake_collection.find.assert_called_with({})

    fake_collection.find_one = AsyncMock(return_value=None)
    assert await context.find('people', Person, Field('_id') == 9) is None


@pytest.mark.asyncio
async def test_async_select_variants():
    fake_collection = MagicMock()
    cursor = cursor_returning([{'_id': 1, 'name': 'a'}])
    fake_collection.find.return_value = cursor
    context, _ = make_context(fake_collection)

    await context.select_with_limit('people', Person, Field('name') == 'a', 5)
    cursor.limit.assert_called_with(5)

    await context.select_with_key('people', Person, 'age', 3)
    fake_collection.find.assert_called_with({'age': '3'})

    await context.select_by_keys('people', Person, lambda k: Field('tags') == k, ['x', 'y'])
    fake_collection.find.assert_called_with({'$and': [{'tags': 'x'}, {'tags': 'y'}]})

    fake_collection.find.reset_mock()
    assert await context.select_by_keys('people', Person, lambda k: Field('tags') == k, []) == []
    fake_collection.find.assert_not_called()


@pytest.mark.asyncio
async def test_async_writes_collapse_results():
    fake_collection = MagicMock()
    fake_collection.insert_one = AsyncMock(return_value=Mock(inserted_id=10))
    fake_collection.insert_many = AsyncMock(return_value=Mock(inserted_ids=[1, 2]))
    fake_collection.replace_one = AsyncMock(
        return_value=Mock(acknowledged=True, modified_count=1, upserted_id=None)
    )
    fake_collection.update_one = AsyncMock(return_value=Mock(acknowledged=True, modified_count=0))
    fake_collection.bulk_write = AsyncMock(
        return_value=Mock(acknowledged=True, upserted_count=1, modified_count=1)
    )
    fake_collection.delete_one = AsyncMock(return_value=Mock(acknowledged=True, deleted_count=1))
    fake_collection.delete_many = AsyncMock(return_value=Mock(acknowledged=True, deleted_count=0))
    context, _ = make_context(fake_collection)

    person = Person(name='a')
    await context.insert_one('people', Person, person)
    assert person.id == 10

    await context.insert_many('people', Person, [Person(id=1), Person(id=2)])
    assert fake_collection.insert_many.call_args.kwargs['ordered'] is True

    assert await context.update_one('people', Person, Field('_id') == 1, Person(id=1, name='b')) is True
    fake_collection.replace_one.assert_awaited_with(
        {'_id': 1}, {'_id': 1, 'name': 'b', 'tags': []}, upsert=False
    )
    assert await context.update_one_add_to_set('people', Person, Field('_id') == 1, 'tags', 'x') is False
    fake_collection.update_one.assert_called_with(
        {'_id': 1}, {'$addToSet': {'tags': 'x'}}, upsert=False
    )
    assert await context.update_one_push('people', Person, Field('_id') == 1, 'tags', 'x') is False

    assert await context.bulk_write(
        'people', Person, lambda p: Field('_id') == p.id, [Person(id=1), Person(id=2)]
    ) is True
    assert await context.bulk_write('people', Person, lambda p: Field('_id') == p.id, []) is False
    assert fake_collection.bulk_write.await_count == 1

    assert await context.delete_one('people', Person, Field('_id') == 1) is True
    assert await context.delete_many('people', Person, Field('_id') > 100) is False


@pytest.mark.asyncio
async def test_async_predicate_errors_raise_immediately():
    fake_collection = MagicMock()
    fake_collection.find_one = AsyncMock()
    context, _ = make_context(fake_collection)
    with pytest.raises(PredicateTranslationError):
        await context.find('people', Person, lambda p: p.id == 1)
    fake_collection.find_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_async_cancellation_is_distinct_from_store_failure():
    started = asyncio.Event()

    async def slow_find_one(query_filter):
        started.set()
        await asyncio.sleep(10)

    fake_collection = MagicMock()
    fake_collection.find_one = AsyncMock(side_effect=slow_find_one)
    context, _ = make_context(fake_collection)

    task = asyncio.ensure_future(context.find('people', Person, Field('_id') == 1))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(context.find('people', Person, Field('_id') == 1), timeout=0.01)


@pytest.mark.asyncio
async def test_async_where_on_identity_attribute_queries_stored_id():
    fake_collection = MagicMock()
    fake_collection.find_one = AsyncMock(return_value={'_id': 1, 'name': 'a'})
    context, _ = make_context(fake_collection)

    assert await context.find('people', Person, where(id=1)) == Person(id=1, name='a')
    fake_collection.find_one.assert_awaited_with({'_id': 1})


@pytest.mark.asyncio
async def test_async_insert_many_failure_assigns_ids_of_persisted_entities():
    async def insert_many(documents, ordered):
        for index, document in enumerate(documents):
            document.setdefault('_id', f'gen{index}')
        raise BulkWriteError({
            'nInserted': 2,
            'writeErrors': [{'index': 1, 'code': 11000, 'errmsg': 'duplicate key'}],
        })

    fake_collection = MagicMock()
    fake_collection.insert_many = AsyncMock(side_effect=insert_many)
    context, _ = make_context(fake_collection)

    people = [Person(name='a'), Person(name='b'), Person(name='c')]
    with pytest.raises(BulkWriteError):
        await context.insert_many('people', Person, people, ordered=False)
    assert [p.id for p in people] == ['gen0', None, 'gen2']
