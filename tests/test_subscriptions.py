import asyncio

import pytest

from modelql import ChangeBus, ChangeEvent, MutationKind
from tests.schema import build_test_schema, modelql, schema


async def _subscribe(target_schema, bus, query, context=None):
    """Start a subscription and wait until its listener is registered."""
    before = bus.listener_count
    sub = await target_schema.subscribe(query, context_value=context or {})
    it = sub if hasattr(sub, '__anext__') else sub.__aiter__()
    task = asyncio.create_task(it.__anext__())
    for _ in range(100):
        if bus.listener_count > before:
            break
        await asyncio.sleep(0.01)
    return it, task


async def _close(it, task):
    if not task.done():
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
    if hasattr(it, 'aclose'):
        await it.aclose()


@pytest.mark.asyncio
async def test_create_event_is_delivered(db_session, populated_db):
    alice_id = populated_db['authors'][0].id
    it, task = await _subscribe(schema, modelql.bus, 'subscription { postSubs { mutation node { title } previous_values updated_fields } }')
    try:
        res = await schema.execute(
            'mutation($a: Int) { postAdd(Post: {title: "Live", author_id: $a}) { id } }',
            variable_values={'a': alice_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        event = await asyncio.wait_for(task, 2)
        assert event.errors is None, event.errors
        assert event.data['postSubs'] == {
            'mutation': 'CREATED',
            'node': {'title': 'Live'},
            'previous_values': None,
            'updated_fields': [],
        }
    finally:
        await _close(it, task)


@pytest.mark.asyncio
async def test_kind_filter_and_previous_values(db_session, populated_db):
    alice_id = populated_db['authors'][0].id
    post_id = populated_db['posts'][1].id
    it, task = await _subscribe(
        schema, modelql.bus,
        'subscription { postSubs(mutation: [UPDATED]) { mutation node { id title } previous_values updated_fields } }',
    )
    try:
        res = await schema.execute(
            'mutation($a: Int) { postAdd(Post: {title: "Ignored", author_id: $a}) { id } }',
            variable_values={'a': alice_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        res = await schema.execute(
            'mutation($id: Int!) { postEdit(id: $id, Post: {title: "Changed"}) { id } }',
            variable_values={'id': post_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        event = await asyncio.wait_for(task, 2)
        assert event.errors is None, event.errors
        payload = event.data['postSubs']
        assert payload['mutation'] == 'UPDATED'
        assert payload['node'] == {'id': post_id, 'title': 'Changed'}
        assert payload['previous_values']['title'] == 'GraphQL is Great'
        assert payload['previous_values']['status'] == 'published'
        assert payload['updated_fields'] == ['title']
    finally:
        await _close(it, task)


@pytest.mark.asyncio
async def test_delete_event_carries_snapshot(db_session, populated_db):
    post_id = populated_db['posts'][2].id
    it, task = await _subscribe(schema, modelql.bus, 'subscription { postSubs(mutation: [DELETED]) { mutation node { id title } } }')
    try:
        res = await schema.execute(
            'mutation($id: Int!) { postDelete(id: $id) }',
            variable_values={'id': post_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        event = await asyncio.wait_for(task, 2)
        assert event.data['postSubs'] == {'mutation': 'DELETED', 'node': {'id': post_id, 'title': 'SQLAlchemy Tips'}}
    finally:
        await _close(it, task)


@pytest.mark.asyncio
async def test_bulk_create_event_lists_nodes(db_session, populated_db):
    bob_id = populated_db['authors'][1].id
    it, task = await _subscribe(schema, modelql.bus, 'subscription { postSubs(mutation: [BULK_CREATED]) { mutation node { id } nodes { title batch_id } } }')
    try:
        res = await schema.execute(
            'mutation($a: Int!) { postAddBulk(Post: [{title: "x1", author_id: $a}, {title: "x2", author_id: $a}]) { id } }',
            variable_values={'a': bob_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        event = await asyncio.wait_for(task, 2)
        payload = event.data['postSubs']
        assert payload['mutation'] == 'BULK_CREATED'
        assert payload['node'] is None
        assert [n['title'] for n in payload['nodes']] == ['x1', 'x2']
        assert len({n['batch_id'] for n in payload['nodes']}) == 1
    finally:
        await _close(it, task)


@pytest.mark.asyncio
async def test_default_predicate_drops_events(db_session, populated_db):
    alice_id = populated_db['authors'][0].id
    it, task = await _subscribe(schema, modelql.bus, 'subscription { postSubs { mutation } }', {'mute_posts': True})
    try:
        res = await schema.execute(
            'mutation($a: Int) { postAdd(Post: {title: "Quiet", author_id: $a}) { id } }',
            variable_values={'a': alice_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        await asyncio.sleep(0.1)
        assert not task.done()
    finally:
        await _close(it, task)


@pytest.mark.asyncio
async def test_subscription_extend_transforms_payload(db_session, populated_db):
    def tag_payload(payload, source, args, ctx, info, where):
        payload.updated_fields = ['extended']
        return payload

    built, custom = build_test_schema(Post={'extend': {'subscription': tag_payload}})
    alice_id = populated_db['authors'][0].id
    it, task = await _subscribe(custom, built.bus, 'subscription { postSubs { updated_fields } }')
    try:
        res = await custom.execute(
            'mutation($a: Int) { postAdd(Post: {title: "Ext", author_id: $a}) { id } }',
            variable_values={'a': alice_id},
            context_value={'db_session': db_session},
        )
        assert res.errors is None, res.errors
        event = await asyncio.wait_for(task, 2)
        assert event.data['postSubs'] == {'updated_fields': ['extended']}
    finally:
        await _close(it, task)


@pytest.mark.asyncio
async def test_custom_subscription_streams_resolved_items():
    async def ticks(source, args, ctx, info):
        for i in range(1, 3):
            yield i

    def widen(item, args, ctx, info):
        return [item, item * 10]

    _, custom = build_test_schema(Tag={'subscriptions': {'tagTicks': {'output': '[int]', 'subscriber': ticks, 'resolver': widen}}})
    sub = await custom.subscribe('subscription { tagTicks }', context_value={})
    received = []
    async for result in sub:
        assert result.errors is None, result.errors
        received.append(result.data['tagTicks'])
    assert received == [[1, 10], [2, 20]]


@pytest.mark.asyncio
async def test_bus_fan_out_and_unsubscribe():
    bus = ChangeBus()
    listener = bus.listen({'postAdd'})
    first = asyncio.create_task(listener.__anext__())
    await asyncio.sleep(0)
    assert bus.listener_count == 1
    assert bus.publish(ChangeEvent(name='postEdit', entity='Post', mutation=MutationKind.UPDATED)) == 0
    assert bus.publish(ChangeEvent(name='postAdd', entity='Post', mutation=MutationKind.CREATED, node='n')) == 1
    event = await asyncio.wait_for(first, 1)
    assert event.node == 'n'
    await listener.aclose()
    assert bus.listener_count == 0
