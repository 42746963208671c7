import hashlib

import pytest

from content_store import ContentStore, create_store_engine


@pytest.fixture
def store():
    return ContentStore(create_store_engine("sqlite://"))


def test_shorten_uses_md5(store):
    url = "https://img.example/cat.png"
    assert store.shorten(url) == hashlib.md5(url.encode()).hexdigest()


def test_shorten_is_idempotent(store):
    url = "https://img.example/cat.png"
    assert store.shorten(url) == store.shorten(url)


def test_resolve(store):
    short_id = store.shorten("https://img.example/dog.png")
    assert store.resolve(short_id) == "https://img.example/dog.png"


def test_resolve_unknown(store):
    assert store.resolve("0" * 32) is None


def test_file_database_persists(tmp_path):
    url = f"sqlite:///{tmp_path / 'artmint.db'}"
    short_id = ContentStore(create_store_engine(url)).shorten("https://img.example/bird.png")
    assert ContentStore(create_store_engine(url)).resolve(short_id) == "https://img.example/bird.png"
