"""Management of third party package repositories."""

from __future__ import annotations

from edgefleet.base import Service
from edgefleet.errors import InternalServerError, ThirdPartyRepositoryNotFound
from edgefleet.models import ThirdPartyRepo


def _parse_id(repo_id: str | int) -> int | None:
    try:
        return int(repo_id)
    except (TypeError, ValueError):
        return None


class ThirdPartyRepoService(Service):
    """Business logic around third party repositories of an account."""

    service_name = "third-party-repo"

    def create_third_party_repo(
        self, repo: ThirdPartyRepo, account: str
    ) -> ThirdPartyRepo:
        """Store a new repository for the account.

        A repository without both a name and a URL is returned as given and
        not stored.
        """
        if repo.url and repo.name:
            repo = ThirdPartyRepo(
                name=repo.name,
                url=repo.url,
                description=repo.description,
                account=account,
            )
            self.store.add(repo)
        return repo

    def get_third_party_repo_by_id(self, repo_id: str | int) -> ThirdPartyRepo:
        """Return the repository with that id belonging to the request's account."""
        account = self.require_account()
        wanted = _parse_id(repo_id)
        found = self.store.first(
            ThirdPartyRepo,
            lambda r: r.account == account and r.id == wanted,
        )
        if found is None:
            raise ThirdPartyRepositoryNotFound()
        return found

    def update_third_party_repo(
        self, repo: ThirdPartyRepo, account: str, repo_id: str | int
    ) -> None:
        """Copy the non-empty name, URL and description of ``repo`` onto the stored one."""
        repo.account = account
        try:
            details = self.get_third_party_repo_by_id(repo_id)
        except Exception as exc:
            self.log.error("Error retrieving third party repository: %s", exc)
            raise
        if repo.name:
            details.name = repo.name
        if repo.url:
            details.url = repo.url
        if repo.description:
            details.description = repo.description
        self.store.save(details)

    def delete_third_party_repo_by_id(self, repo_id: str | int) -> ThirdPartyRepo:
        """Delete the repository with that id from the request's account and return it."""
        wanted = _parse_id(repo_id)
        repo = self.store.first(ThirdPartyRepo, lambda r: r.id == wanted)
        if repo is None:
            raise ThirdPartyRepositoryNotFound()
        account = self.require_account()
        try:
            details = self.get_third_party_repo_by_id(repo_id)
        except Exception as exc:
            self.log.error("Error retrieving third party repository: %s", exc)
            raise
        if not details.name:
            raise InternalServerError()
        if details.account != account or not self.store.delete(details):
            self.log.error("Error deleting third party repository")
            raise InternalServerError()
        return repo