import pytest

from modelql.core.filters import ASC, DESC, asks_for_deleted, parse_order, parse_where, substitute_where_vars
from modelql.errors import ValidationError
from modelql.resolvers import decode_cursor, encode_cursor, needs_total, page_window, resolve_scope


def test_parse_where_accepts_json_strings_and_dicts():
    assert parse_where('{"title": {"like": "A%"}}') == {'title': {'like': 'A%'}}
    assert parse_where({'id': 1}) == {'id': 1}
    assert parse_where('   ') is None
    assert parse_where(None) is None


def test_parse_where_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_where('[1, 2]')


def test_substitute_where_vars_evaluates_callables_recursively():
    where = {
        'author_id': lambda v: v['author'],
        'or': [{'title': {'like': lambda v: v['prefix'] + '%'}}, {'id': 3}],
    }
    out = substitute_where_vars(where, {'author': 7, 'prefix': 'Gr'})
    assert out is where
    assert where['author_id'] == 7
    assert where['or'][0] == {'title': {'like': 'Gr%'}}
    assert where['or'][1] == {'id': 3}


def test_parse_order_reverse_marker():
    assert parse_order('title, reverse:created_at,') == [('title', ASC), ('created_at', DESC)]
    assert parse_order(None) == []


def test_asks_for_deleted():
    assert asks_for_deleted({'deleted_at': {'ne': None}}, 'deleted_at')
    assert not asks_for_deleted({'deleted_at': None}, 'deleted_at')
    assert not asks_for_deleted({'deleted_at': {'ne': None}}, None)
    assert not asks_for_deleted({}, 'deleted_at')


def test_scope_fixed_name_and_argument_path():
    assert resolve_scope(None, {}) is None
    assert resolve_scope('published', {}) == ('published', ())
    assert resolve_scope(('by_author', 'author', None), {'author': 3}) == ('by_author', (3,))
    assert resolve_scope(('by_author', 'filter.author', 9), {'filter': {}}) == ('by_author', (9,))


def test_cursor_round_trip_and_invalid_cursor():
    assert decode_cursor(encode_cursor(4)) == 4
    with pytest.raises(ValidationError):
        decode_cursor('bm9wZQ==')


def test_page_window_folds_relay_and_offset_arguments():
    assert page_window({}) == (0, None)
    assert page_window({'limit': 2, 'offset': 1}) == (1, 2)
    assert page_window({'first': 2, 'after': encode_cursor(1)}) == (2, 2)
    assert page_window({'before': encode_cursor(3), 'last': 2}) == (1, 2)
    assert needs_total({'last': 2})
    assert page_window({'last': 2}, total=5) == (3, 2)
