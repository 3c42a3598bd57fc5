import pytest
from sqlalchemy import select

from tests.models import Post
from tests.schema import build_test_schema, schema


@pytest.mark.asyncio
async def test_tagged_bulk_create_shares_one_batch_id(db_session, populated_db):
    alice_id = populated_db['authors'][0].id
    rows = [{'title': 'B1', 'author_id': alice_id}, {'title': 'B2', 'author_id': alice_id}]
    res = await schema.execute(
        'mutation($rows: [PostAddInput!]!) { postAddBulk(Post: $rows) { id title batch_id } }',
        variable_values={'rows': rows},
        context_value={'db_session': db_session},
    )
    assert res.errors is None, res.errors
    out = res.data['postAddBulk']
    assert [r['title'] for r in out] == ['B1', 'B2']
    batch = out[0]['batch_id']
    assert batch and len(batch) == 36
    assert out[1]['batch_id'] == batch
    stored = (await db_session.execute(select(Post.title).where(Post.batch_id == batch).order_by(Post.id))).scalars().all()
    assert stored == ['B1', 'B2']


@pytest.mark.asyncio
async def test_bulk_create_requires_required_fields(db_session, populated_db):
    res = await schema.execute(
        'mutation { postAddBulk(Post: [{author_id: 1}]) { id } }',
        context_value={'db_session': db_session},
    )
    assert res.errors is not None
    assert 'title' in res.errors[0].message


@pytest.mark.asyncio
async def test_bulk_create_rejects_nested_payloads(db_session, populated_db):
    alice_id = populated_db['authors'][0].id
    res = await schema.execute(
        'mutation($a: Int) { postAddBulk(Post: [{title: "x", author_id: $a, comments: [{body: "c"}]}]) { id } }',
        variable_values={'a': alice_id},
        context_value={'db_session': db_session},
    )
    assert res.errors is not None
    assert 'does not accept nested associations: comments' in res.errors[0].message


@pytest.mark.asyncio
async def test_bulk_edit_returns_updated_set(db_session, populated_db):
    first, second = populated_db['posts'][0].id, populated_db['posts'][1].id
    res = await schema.execute(
        'mutation($rows: [PostEditInput!]!) { postEditBulk(Post: $rows) { id title } }',
        variable_values={'rows': [{'id': second, 'title': 'two'}, {'id': first, 'title': 'one'}]},
        context_value={'db_session': db_session},
    )
    assert res.errors is None, res.errors
    assert sorted((r['id'], r['title']) for r in res.data['postEditBulk']) == [(first, 'one'), (second, 'two')]


@pytest.mark.asyncio
async def test_bulk_edit_needs_primary_key_in_every_row(db_session, populated_db):
    res = await schema.execute(
        'mutation { postEditBulk(Post: [{title: "orphan"}]) { id } }',
        context_value={'db_session': db_session},
    )
    assert res.errors is not None
    assert "needs 'id' in every row" in res.errors[0].message


@pytest.mark.asyncio
async def test_plain_bulk_create_returns_count(db_session, populated_db):
    _, plain = build_test_schema(Post={'bulk': ['create']})
    alice_id = populated_db['authors'][0].id
    res = await plain.execute(
        'mutation($a: Int!) { postAddBulk(Post: [{title: "u1", author_id: $a}, {title: "u2", author_id: $a}]) }',
        variable_values={'a': alice_id},
        context_value={'db_session': db_session},
    )
    assert res.errors is None, res.errors
    assert res.data == {'postAddBulk': 2}
    stored = (await db_session.execute(select(Post.batch_id).where(Post.title.in_(['u1', 'u2'])))).scalars().all()
    assert stored == [None, None]


@pytest.mark.asyncio
async def test_bulk_create_requires_non_null_reference(db_session, populated_db):
    res = await schema.execute(
        'mutation { postAddBulk(Post: [{title: "no author"}]) { id } }',
        context_value={'db_session': db_session},
    )
    assert res.errors is not None
    assert 'author_id' in res.errors[0].message
    assert (await db_session.execute(select(Post).where(Post.title == 'no author'))).first() is None
