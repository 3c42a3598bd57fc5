"""Database fixtures for ModelQL tests (shared)."""

import pytest
from datetime import datetime, timezone, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Author, Post, Comment, Tag, PostTag, PostStatus


async def create_sample_authors(session: AsyncSession):
    """Create and commit the sample authors used across tests."""
    authors = [
        Author(name="alice", email="alice@example.com"),
        Author(name="bob", email="bob@example.com"),
        Author(name="carol", email=None),
    ]
    session.add_all(authors)
    await session.flush()
    await session.commit()
    return authors


@pytest.fixture(scope="function")
async def sample_authors(db_session: AsyncSession):
    return await create_sample_authors(db_session)


async def create_sample_posts(session: AsyncSession, authors):
    """Create and commit the sample posts with deterministic timestamps.

    The last post is soft-deleted.
    """
    alice, bob, _ = authors
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    posts = [
        Post(title="First Post", body="Hello world!", author_id=alice.id,
             status=PostStatus.PUBLISHED, created_at=now - timedelta(minutes=60)),
        Post(title="GraphQL is Great", body="I love GraphQL!", author_id=alice.id,
             status=PostStatus.PUBLISHED, created_at=now - timedelta(minutes=45)),
        Post(title="SQLAlchemy Tips", body="Some useful tips...", author_id=bob.id,
             status=PostStatus.DRAFT, created_at=now - timedelta(minutes=30)),
        Post(title="Removed Post", body="gone", author_id=bob.id,
             status=PostStatus.DRAFT, created_at=now - timedelta(minutes=15),
             deleted_at=now - timedelta(minutes=5)),
    ]
    session.add_all(posts)
    await session.flush()
    await session.commit()
    return posts


@pytest.fixture(scope="function")
async def sample_posts(db_session: AsyncSession, sample_authors):
    return await create_sample_posts(db_session, sample_authors)


async def create_sample_comments(session: AsyncSession, posts):
    first, second, third, _ = posts
    comments = [
        Comment(body="Great post!", post_id=first.id),
        Comment(body="Thanks for sharing", post_id=first.id),
        Comment(body="Very helpful", post_id=second.id),
        Comment(body="Orphan comment", post_id=None),
    ]
    session.add_all(comments)
    await session.flush()
    await session.commit()
    return comments


@pytest.fixture(scope="function")
async def sample_comments(db_session: AsyncSession, sample_posts):
    return await create_sample_comments(db_session, sample_posts)


async def create_sample_tags(session: AsyncSession, posts):
    """Create tags and attach them to the first post through post_tags rows."""
    tags = [Tag(name="python"), Tag(name="graphql"), Tag(name="sql")]
    session.add_all(tags)
    await session.flush()
    first = posts[0]
    links = [
        PostTag(post_id=first.id, tag_id=tags[0].id, position=2),
        PostTag(post_id=first.id, tag_id=tags[1].id, position=1),
        PostTag(post_id=posts[2].id, tag_id=tags[2].id, position=0),
    ]
    session.add_all(links)
    await session.flush()
    await session.commit()
    return tags


@pytest.fixture(scope="function")
async def sample_tags(db_session: AsyncSession, sample_posts):
    return await create_sample_tags(db_session, sample_posts)


@pytest.fixture(scope="function")
async def populated_db(db_session, sample_authors, sample_posts, sample_comments, sample_tags):
    return {
        'authors': sample_authors,
        'posts': sample_posts,
        'comments': sample_comments,
        'tags': sample_tags,
    }
