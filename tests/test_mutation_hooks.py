import warnings

import pytest
from sqlalchemy import func, select

from modelql import PolicyWarning, errors
from tests.models import Author, Comment, Tag
from tests.schema import AUDIT_LOG, HOOK_EVENTS, build_test_schema, default_options, schema


@pytest.mark.asyncio
async def test_before_and_extend_hooks_wrap_create(db_session, populated_db):
    HOOK_EVENTS.clear()
    alice_id = populated_db['authors'][0].id
    res = await schema.execute(
        'mutation($a: Int) { postAdd(Post: {title: "Hooked", author_id: $a}) { id title } }',
        variable_values={'a': alice_id},
        context_value={'db_session': db_session, 'test_hooks': True},
    )
    assert res.errors is None, res.errors
    out = res.data['postAdd']
    # before rewrote the payload, extend decorated the returned record
    assert out['title'] == '[pre]Hooked[post]'
    assert HOOK_EVENTS == [('before', 'create'), ('extend', 'create', out['id'])]


@pytest.mark.asyncio
async def test_before_hook_runs_for_nested_writes(db_session, populated_db):
    HOOK_EVENTS.clear()
    res = await schema.execute(
        'mutation { authorAdd(Author: {name: "hal", posts: [{title: "child"}]}) { posts { edges { node { title } } } } }',
        context_value={'db_session': db_session, 'test_hooks': True},
    )
    assert res.errors is None, res.errors
    assert res.data['authorAdd']['posts']['edges'] == [{'node': {'title': '[pre]child'}}]
    assert HOOK_EVENTS == [('before', 'create')]


@pytest.mark.asyncio
async def test_overwrite_replaces_default_behavior(db_session, populated_db):
    calls = []

    async def fake_destroy(source, args, ctx, info, where):
        calls.append((dict(where), ctx['db_session'] is db_session))
        return 42

    AUDIT_LOG.clear()
    _, custom = build_test_schema(Comment={'overwrite': {'destroy': fake_destroy}})
    comment_id = populated_db['comments'][0].id
    res = await custom.execute(
        'mutation($id: Int!) { commentDelete(id: $id) }',
        variable_values={'id': comment_id},
        context_value={'db_session': db_session},
    )
    assert res.errors is None, res.errors
    assert res.data['commentDelete'] == 42
    assert calls == [({'id': comment_id}, True)]
    assert await db_session.get(Comment, comment_id) is not None
    # The logger still sees overwritten results
    assert AUDIT_LOG[-1]['result'] == 42


@pytest.mark.asyncio
async def test_fetch_overwrite_skips_storage(db_session, populated_db):
    def fixed(source, args, ctx, info):
        return []

    _, custom = build_test_schema(Author={'overwrite': {'fetch': fixed}})
    res = await custom.execute('query { authorGet { id } }', context_value={'db_session': db_session})
    assert res.errors is None, res.errors
    assert res.data['authorGet'] == []


@pytest.mark.asyncio
async def test_disabled_transactions_warn_once(db_session, populated_db, monkeypatch):
    monkeypatch.setattr(errors, '_warned', set())
    _, relaxed = build_test_schema(default_options(transactioned_mutations=False))
    with pytest.warns(PolicyWarning, match='transactioned mutations are disabled'):
        res = await relaxed.execute(
            'mutation { authorAdd(Author: {name: "ivy"}, transaction: true) { id } }',
            context_value={'db_session': db_session},
        )
    assert res.errors is None, res.errors

    with warnings.catch_warnings():
        warnings.simplefilter('error', PolicyWarning)
        res = await relaxed.execute(
            'mutation { authorAdd(Author: {name: "jon"}, transaction: true) { id } }',
            context_value={'db_session': db_session},
        )
    assert res.errors is None, res.errors
    total = (await db_session.execute(select(func.count()).select_from(Author))).scalar()
    assert total == 5


def test_excluded_operations_are_not_exposed():
    _, narrow = build_test_schema(Comment={'exclude_mutations': ['destroy'], 'exclude_queries': ['count']})
    sdl = narrow.as_str()
    assert 'commentDelete' not in sdl
    assert 'commentCount' not in sdl
    assert 'commentGet' in sdl and 'commentAdd' in sdl


def test_aliases_rename_root_fields():
    _, aliased = build_test_schema(Comment={'alias': {'fetch': 'comments', 'create': 'writeComment'}})
    query_fields = aliased._schema.query_type.fields
    mutation_fields = aliased._schema.mutation_type.fields
    assert 'comments' in query_fields and 'commentGet' not in query_fields
    assert 'writeComment' in mutation_fields and 'commentAdd' not in mutation_fields
    # Events follow the renamed mutation
    assert 'commentSubs' in aliased._schema.subscription_type.fields


@pytest.mark.asyncio
async def test_custom_mutation_is_authorized_and_logged(db_session, populated_db):
    async def rename(source, args, ctx, info):
        tag = await ctx['db_session'].get(Tag, args['id'])
        tag.name = args['name']
        await ctx['db_session'].commit()
        return tag

    AUDIT_LOG.clear()
    _, custom = build_test_schema(Tag={'mutations': {'tagRename': {
        'input': {'id': 'int!', 'name': 'string!'},
        'output': 'Tag',
        'resolver': rename,
    }}})
    tag_id = populated_db['tags'][0].id
    mutation = 'mutation($id: Int!) { tagRename(id: $id, name: "py") { id name } }'
    denied = await custom.execute(mutation, variable_values={'id': tag_id}, context_value={'db_session': db_session, 'deny': True})
    assert denied.errors is not None
    assert AUDIT_LOG == []

    res = await custom.execute(mutation, variable_values={'id': tag_id}, context_value={'db_session': db_session})
    assert res.errors is None, res.errors
    assert res.data['tagRename'] == {'id': tag_id, 'name': 'py'}
    assert AUDIT_LOG[-1]['field'] == 'tagRename'


@pytest.mark.asyncio
async def test_destroy_extend_receives_deleted_record(db_session, populated_db):
    seen = []

    def ext(record, source, args, ctx, info, where):
        seen.append((type(record).__name__, record.body))
        return 7

    _, custom = build_test_schema(Comment={'extend': {'destroy': ext}})
    comment = populated_db['comments'][0]
    res = await custom.execute(
        'mutation($id: Int!) { commentDelete(id: $id) }',
        variable_values={'id': comment.id},
        context_value={'db_session': db_session},
    )
    assert res.errors is None, res.errors
    assert seen == [('Comment', 'Great post!')]
    assert res.data['commentDelete'] == 7
