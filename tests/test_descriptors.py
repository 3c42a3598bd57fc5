import pytest

from modelql import GraphOptions, RelationKind
from modelql.associations import synthesize_implicit
from modelql.core.descriptors import AssociationDescriptor, EntityDescriptor, FieldDescriptor
from modelql.storage.sqla import descriptors_from_models
from tests.models import MODELS, PostStatus


@pytest.fixture(scope="module")
def entities():
    return descriptors_from_models(MODELS)


def test_fields_from_columns(entities):
    post = entities['Post']
    assert [f.name for f in post.fields] == [
        'id', 'title', 'body', 'status', 'author_id', 'batch_id', 'deleted_at', 'created_at',
    ]
    assert post.field('id').primary_key and post.field('id').autoincrement
    assert post.field('title').nullable is False
    assert post.field('status').python_type is PostStatus
    assert post.field('status').has_default is True
    assert post.field('author_id').references == 'Author'
    assert post.field('created_at').timestamp is True
    assert entities['Author'].field('name').description == 'Public display name'


def test_relationship_kinds(entities):
    post = entities['Post']
    assert post.association('author').kind is RelationKind.TO_ONE_OWNING
    assert post.association('author').foreign_key == 'author_id'
    assert post.association('comments').kind is RelationKind.TO_MANY
    assert post.association('comments').foreign_key == 'post_id'
    tags = post.association('tags')
    assert tags.kind is RelationKind.TO_MANY_THROUGH
    assert (tags.through, tags.foreign_key, tags.target_key) == ('PostTag', 'post_id', 'tag_id')
    reverse = entities['Tag'].association('posts')
    assert (reverse.foreign_key, reverse.target_key) == ('tag_id', 'post_id')


def test_class_level_options(entities):
    post = entities['Post']
    assert post.paranoid is True
    assert post.deleted_at_field == 'deleted_at'
    assert post.options.bulk_option('create') == 'batch_id'
    assert post.options.bulk_option('edit') is True
    assert entities['Comment'].options.bulk_option('create') is False
    assert entities['Author'].plural == 'Authors'
    assert entities['Comment'].plural == 'Comments'
    assert post.description == 'Blog posts'


def test_graph_options_reject_unknown_keys():
    with pytest.raises(TypeError):
        GraphOptions.from_dict({'attribute': {}})


def test_attribute_options_per_operation():
    opts = GraphOptions.from_dict({'attributes': {'exclude': {'create': ['a']}, 'only': ['a', 'b']}})
    assert opts.attributes.excluded('create') == ['a']
    assert opts.attributes.excluded('fetch') == []
    assert opts.attributes.allowed('update') == ['a', 'b']


def test_reference_fields_become_owning_associations(entities):
    out = synthesize_implicit(entities)
    link = out['PostTag']
    assert {a.name for a in link.associations} == {'Post', 'Tag'}
    assert all(a.synthetic and a.kind is RelationKind.TO_ONE_OWNING for a in link.associations)
    assert link.association('Tag').foreign_key == 'tag_id'
    # Declared associations are not duplicated and inputs stay untouched
    assert [a.name for a in out['Post'].associations] == [a.name for a in entities['Post'].associations]
    assert entities['PostTag'].associations == []


def test_synthesis_skips_unknown_targets():
    lonely = EntityDescriptor(
        name='Audit',
        fields=[FieldDescriptor('id', 'int', primary_key=True), FieldDescriptor('user_id', 'int', references='User')],
    )
    assert synthesize_implicit({'Audit': lonely})['Audit'].associations == []


def test_association_flags():
    through = AssociationDescriptor('tags', 'Post', 'Tag', RelationKind.TO_MANY_THROUGH, 'post_id', 'PostTag', 'tag_id')
    assert through.is_list and through.is_through and not through.owns_key
    owning = AssociationDescriptor('author', 'Post', 'Author', RelationKind.TO_ONE_OWNING, 'author_id')
    assert owning.owns_key and not owning.is_list
