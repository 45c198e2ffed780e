"""Integration tests against a real MongoDB server.

Every test runs in a throwaway database that is dropped on teardown.
The module is skipped when no server answers at ``MONGO_URI``.
"""
import os
from dataclasses import dataclass, field
from typing import List

import pytest
from pymongo.errors import BulkWriteError, DuplicateKeyError

from models.document_base import DocumentBase
from repository.async_repository import AsyncMongoDbContext
from repository.filters import Field, where
from repository.repository import MongoDbContext
from repository.store import AsyncMongoDbClient, MongoDbClient
from util.connect import get_client

TEST_DB_NAME = "test_generic_context_integration"
MONGO_CONNECTION_STRING = os.getenv("MONGO_URI", "mongodb://localhost:27017")
COLLECTION = "people"


@dataclass
class Person(DocumentBase):
    name: str = ''
    tags: List[str] = field(default_factory=list)


@dataclass
class Key:
    tenant: str = field(default='', metadata={'bson_name': 't'})
    number: int = 0


@dataclass
class Order(DocumentBase[Key]):
    total: int = 0


@pytest.fixture(scope="function")
def mongo_client():
    """Connect to MongoDB, hand out the client, then drop the test database."""
    try:
        client = get_client(MONGO_CONNECTION_STRING, timeout_ms=2000)
    except ConnectionError:
        pytest.skip(f"MongoDB is not reachable at {MONGO_CONNECTION_STRING}")

    client.drop_database(TEST_DB_NAME)
    yield client
    client.drop_database(TEST_DB_NAME)
    client.close()


@pytest.fixture(scope="function")
def context(mongo_client):
    return MongoDbContext(MongoDbClient(mongo_client, TEST_DB_NAME))


def by_id(person):
    return Field('_id') == person.id


def test_insert_then_find_returns_equal_entity(context):
    person = Person(id=1, name='a', tags=['x'])
    context.insert_one(COLLECTION, Person, person)
    assert context.find(COLLECTION, Person, Field('_id') == 1) == person


def test_insert_assigns_generated_identity(context):
    person = Person(name='generated')
    context.insert_one(COLLECTION, Person, person)
    assert person.id is not None
    assert context.find(COLLECTION, Person, by_id(person)) == person


def test_duplicate_identity_is_rejected(context):
    context.insert_one(COLLECTION, Person, Person(id=1, name='a'))
    with pytest.raises(DuplicateKeyError):
        context.insert_one(COLLECTION, Person, Person(id=1, name='b'))


def test_ordered_insert_many_stops_at_first_failure(context):
    people = [Person(id=1, name='a'), Person(id=1, name='dup'), Person(id=3, name='c')]
    with pytest.raises(BulkWriteError):
        context.insert_many(COLLECTION, Person, people)
    assert [p.id for p in context.select_all(COLLECTION, Person)] == [1]


def test_unordered_insert_many_skips_only_the_duplicate(context):
    people = [Person(id=1, name='a'), Person(id=1, name='dup'), Person(id=3, name='c')]
    with pytest.raises(BulkWriteError):
        context.insert_many(COLLECTION, Person, people, ordered=False)
    assert sorted(p.id for p in context.select_all(COLLECTION, Person)) == [1, 3]


def test_failed_insert_many_assigns_ids_of_persisted_entities(context):
    context.insert_one(COLLECTION, Person, Person(id=2, name='existing'))
    people = [Person(name='a'), Person(id=2, name='dup'), Person(name='c')]
    with pytest.raises(BulkWriteError):
        context.insert_many(COLLECTION, Person, people, ordered=False)
    assert people[0].id is not None and people[2].id is not None
    assert context.find(COLLECTION, Person, where(id=people[0].id)) == people[0]
    assert context.find(COLLECTION, Person, where(id=people[2].id)) == people[2]


def test_composite_identity_round_trip(context):
    order = Order(id=Key('acme', 1), total=5)
    context.insert_one('orders', Order, order)
    assert context.find('orders', Order, where(id=Key('acme', 1))) == order
    assert context.select('orders', Order, Field('id.tenant') == 'acme') == [order]


def test_where_on_identity_attribute(context):
    context.insert_many(COLLECTION, Person, [Person(id=1, name='a'), Person(id=2, name='b')])
    assert context.find(COLLECTION, Person, where(id=2)) == Person(id=2, name='b')
    assert context.update_one_push(COLLECTION, Person, where(id=1), 'tags', 'x') is True
    assert context.find(COLLECTION, Person, Field('id') == 1).tags == ['x']


def test_unknown_stored_fields_are_ignored(context, mongo_client):
    mongo_client[TEST_DB_NAME][COLLECTION].insert_one({'_id': 1, 'name': 'a', 'legacy': 'x'})
    assert context.find(COLLECTION, Person, Field('_id') == 1) == Person(id=1, name='a')


def test_delete_one_reports_whether_anything_was_removed(context):
    assert context.delete_one(COLLECTION, Person, Field('_id') == 1) is False
    context.insert_many(COLLECTION, Person, [Person(id=1, name='a'), Person(id=2, name='a')])
    assert context.delete_one(COLLECTION, Person, Field('name') == 'a') is True
    assert len(context.select_all(COLLECTION, Person)) == 1


def test_push_keeps_duplicates_and_add_to_set_does_not(context):
    context.insert_one(COLLECTION, Person, Person(id=1, name='a'))

    assert context.update_one_push(COLLECTION, Person, Field('_id') == 1, 'tags', 'x') is True
    assert context.update_one_push(COLLECTION, Person, Field('_id') == 1, 'tags', 'x') is True
    assert context.find(COLLECTION, Person, Field('_id') == 1).tags == ['x', 'x']

    assert context.update_one_add_to_set(COLLECTION, Person, Field('_id') == 1, 'tags', 'y') is True
    assert context.update_one_add_to_set(COLLECTION, Person, Field('_id') == 1, 'tags', 'y') is False
    assert context.find(COLLECTION, Person, Field('_id') == 1).tags == ['x', 'x', 'y']


def test_replace_without_upsert_leaves_collection_unchanged(context):
    assert context.update_one(COLLECTION, Person, Field('_id') == 1, Person(id=1, name='a')) is False
    assert context.select_all(COLLECTION, Person) == []

    assert context.update_one(
        COLLECTION, Person, Field('_id') == 1, Person(id=1, name='a'), upsert=True
    ) is True
    assert context.update_one(COLLECTION, Person, Field('_id') == 1, Person(id=1, name='b')) is True
    assert context.find(COLLECTION, Person, Field('_id') == 1).name == 'b'


def test_bulk_write_is_idempotent(context):
    context.insert_one(COLLECTION, Person, Person(id=1, name='old'))
    people = [Person(id=i, name=f'p{i}') for i in range(1, 5)]

    assert context.bulk_write(COLLECTION, Person, by_id, people) is True
    context.bulk_write(COLLECTION, Person, by_id, people)

    stored = context.select_all(COLLECTION, Person)
    assert sorted(p.id for p in stored) == [1, 2, 3, 4]
    assert context.find(COLLECTION, Person, Field('_id') == 1).name == 'p1'


def test_insert_select_delete_scenario(context):
    context.insert_many(COLLECTION, Person, [Person(id=1, name='a'), Person(id=2, name='b')])
    assert len(context.select_all(COLLECTION, Person)) == 2
    assert context.delete_many(COLLECTION, Person, Field('_id') > 0) is True
    assert context.select_all(COLLECTION, Person) == []


def test_select_with_key_and_limit(context):
    context.insert_many(COLLECTION, Person, [Person(id=1, name='a'), Person(id=2, name='b')])
    assert context.select_with_key(COLLECTION, Person, 'name', 'a') == [Person(id=1, name='a')]
    assert len(context.select_with_limit(COLLECTION, Person, Field('_id') > 0, 1)) == 1


def test_select_by_keys_matches_all_keys(context):
    context.insert_many(COLLECTION, Person, [
        Person(id=1, name='a', tags=['x', 'y']),
        Person(id=2, name='b', tags=['x']),
    ])
    result = context.select_by_keys(COLLECTION, Person, lambda tag: Field('tags') == tag, ['x', 'y'])
    assert [p.id for p in result] == [1]


@pytest.mark.asyncio
async def test_async_context_round_trip(mongo_client):
    store = AsyncMongoDbClient(MONGO_CONNECTION_STRING, TEST_DB_NAME, timeout_ms=2000)
    context = AsyncMongoDbContext(store)
    try:
        await context.insert_many(COLLECTION, Person, [Person(id=1, name='a'), Person(id=2, name='b')])
        assert await context.find(COLLECTION, Person, Field('_id') == 2) == Person(id=2, name='b')
        assert await context.update_one_add_to_set(COLLECTION, Person, Field('_id') == 1, 'tags', 'x') is True
        assert await context.bulk_write(
            COLLECTION, Person, by_id, [Person(id=2, name='c'), Person(id=3, name='d')]
        ) is True
        assert len(await context.select_all(COLLECTION, Person)) == 3
        assert await context.delete_many(COLLECTION, Person, Field('_id') > 0) is True
        assert await context.select_all(COLLECTION, Person) == []
    finally:
        await store.close()
