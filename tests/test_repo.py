import pytest

from edgefleet.base import Store
from edgefleet.errors import ServiceError
from edgefleet.models import Repo, RepoStatus
from edgefleet.repo import RepoService


@pytest.fixture
def store():
    return Store()


def test_get_existing_repo(store):
    repo = store.add(Repo(url="https://repo.example.com/1", status=RepoStatus.SUCCESS))
    service = RepoService(store=store)
    found = service.get_repo_by_id(repo.id)
    assert found is repo
    assert found.url == "https://repo.example.com/1"


def test_get_repo_picks_the_right_one(store):
    first = store.add(Repo(url="https://repo.example.com/a"))
    second = store.add(Repo(url="https://repo.example.com/b"))
    service = RepoService(store=store)
    assert service.get_repo_by_id(second.id) is second
    assert service.get_repo_by_id(first.id) is first


def test_missing_repo_raises(store):
    service = RepoService(store=store)
    with pytest.raises(ServiceError):
        service.get_repo_by_id(42)


def test_none_id_raises(store):
    store.add(Repo(url="https://repo.example.com/x"))
    service = RepoService(store=store)
    with pytest.raises(ServiceError):
        service.get_repo_by_id(None)