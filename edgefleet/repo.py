"""Lookup of OSTree repositories."""

from __future__ import annotations

from edgefleet.base import Service
from edgefleet.errors import ServiceError
from edgefleet.models import Repo


class RepoService(Service):
    """Business logic around OSTree repositories."""

    service_name = "repo"

    def get_repo_by_id(self, repo_id: int | None) -> Repo:
        """Return the repository with that id.

        Raises ServiceError when there is no such repository.
        """
        self.log.debug("Retrieving repo by ID")
        repo = self.store.get(Repo, repo_id)
        if repo is None:
            self.log.error("Error retrieving image repository")
            raise ServiceError("record not found")
        self.log.debug("Repo by ID retrieved successfully")
        return repo