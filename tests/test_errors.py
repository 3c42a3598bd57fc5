import warnings

import pytest

from modelql import PolicyWarning, StorageError, ValidationError, errors
from modelql.core.descriptors import AssociationDescriptor, EntityDescriptor, GraphOptions, RelationKind
from modelql.core.naming import camel_case, operation_name, type_name
from modelql.errors import ErrorClassifier, warn_once
from modelql.storage.base import StorageAdapter


def test_first_matching_substring_wins():
    classifier = ErrorClassifier({'ETIMEDOUT': {'status_code': 503}, 'connect': {'status_code': 500, 'retry': True}})
    err = classifier.classify(StorageError('connect ETIMEDOUT 10.0.0.1'))
    assert err.status_code == 503
    assert err.extensions == {'status_code': 503}
    assert not hasattr(err, 'retry')


def test_unmatched_errors_are_returned_untouched():
    err = ValueError('boom')
    assert ErrorClassifier({'ETIMEDOUT': {'status_code': 503}}).classify(err) is err
    assert not hasattr(err, 'status_code')


def test_plain_exceptions_get_extensions():
    err = RuntimeError('ETIMEDOUT')
    ErrorClassifier({'ETIMEDOUT': {'status_code': 503}}).classify(err)
    assert err.extensions == {'status_code': 503}


def test_validation_error_is_value_error_with_extensions():
    err = ValidationError('bad', extensions={'path': 'Post.tags[0]'})
    assert isinstance(err, ValueError)
    assert err.extensions['path'] == 'Post.tags[0]'


def test_warn_once(monkeypatch):
    monkeypatch.setattr(errors, '_warned', set())
    with pytest.warns(PolicyWarning):
        warn_once('k', 'downgraded')
    with warnings.catch_warnings():
        warnings.simplefilter('error')
        warn_once('k', 'downgraded')


def test_generated_names():
    assert camel_case('post_add') == 'postAdd'
    assert operation_name('Post', 'Get') == 'postGet'
    assert operation_name('Post', 'Get', 'allPosts') == 'allPosts'
    assert type_name('Post') == 'Post'
    assert type_name('Post', is_input=True) == 'PostAddInput'
    assert type_name('Post', is_input=True, is_update=True) == 'PostEditInput'
    assert type_name('PostTag', is_input=True, is_assoc=True) == 'PostTagAddInputConnection'


def test_accessor_names_use_display_names_and_alias():
    storage = StorageAdapter()
    person = EntityDescriptor(name='Person', options=GraphOptions(name={'singular': 'Person', 'plural': 'People'}))
    many = AssociationDescriptor('members', 'Team', 'Person', RelationKind.TO_MANY, 'team_id')
    one = AssociationDescriptor('owner', 'Team', 'Person', RelationKind.TO_ONE_OWNING, 'owner_id')
    aliased = AssociationDescriptor('lead', 'Team', 'Person', RelationKind.TO_ONE_OWNING, 'lead_id', alias='teamLead')
    assert storage.accessor_name('get', many, person) == 'getPeople'
    assert storage.accessor_name('add', one, person) == 'addPerson'
    assert storage.accessor_name('set', aliased, person) == 'setTeamLead'
    assert storage.accessor_name('get', many) == 'getPersons'
