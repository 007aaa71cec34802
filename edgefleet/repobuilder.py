"""Download, extraction, upload and merging of OSTree repositories."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import subprocess
import tarfile
import urllib.request
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

from edgefleet.base import Service, Settings, Store
from edgefleet.errors import ServiceError
from edgefleet.models import Commit, Repo, RepoStatus, UpdateTransaction

Fetch = Callable[[str, str], None]
Runner = Callable[[list[str]], str]


def _fetch(url: str, path: str) -> None:
    """Download ``url`` into the file at ``path``."""
    try:
        with urllib.request.urlopen(url) as response, open(path, "wb") as out:  # noqa: S310
            shutil.copyfileobj(response, out)
    except (OSError, ValueError) as exc:
        raise ServiceError(f"error grabbing {url}: {exc}") from exc


def _run_command(args: list[str]) -> str:
    """Run a command and return its standard output."""
    try:
        result = subprocess.run(args, check=True, capture_output=True, text=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ServiceError(f"command {' '.join(args)} failed: {exc}") from exc
    return result.stdout


def _as_service_error(exc: Exception) -> ServiceError:
    return exc if isinstance(exc, ServiceError) else ServiceError(str(exc))


def repo_rev_parse(path: str, ref: str) -> str:
    """Return the commit checksum that ``ref`` points to in the repo at ``path``."""
    return _run_command(["ostree", "rev-parse", "--repo", path, ref]).strip()


class TarExtractor:
    """Unpacks tar archives below a destination directory."""

    def extract(self, fileobj: BinaryIO, dest: str) -> None:
        """Unpack the archive read from ``fileobj`` below ``dest``.

        Absolute member names are placed below ``dest``; members that would
        land outside it raise ServiceError.
        """
        root = os.path.abspath(dest)
        os.makedirs(root, exist_ok=True)
        try:
            archive = tarfile.open(fileobj=fileobj, mode="r:*")
        except tarfile.TarError as exc:
            raise ServiceError(f"error reading tar archive: {exc}") from exc
        with archive:
            for member in archive:
                target = os.path.normpath(os.path.join(root, member.name.lstrip("/")))
                if os.path.commonpath([root, target]) != root:
                    raise ServiceError(f"tar member {member.name} escapes {dest}")
                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                elif member.isfile():
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    source = archive.extractfile(member)
                    if source is None:
                        continue
                    with source, open(target, "wb") as out:
                        shutil.copyfileobj(source, out)
                    os.chmod(target, (member.mode & 0o777) or 0o644)
                elif member.issym():
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    if os.path.lexists(target):
                        os.remove(target)
                    os.symlink(member.linkname, target)


class Uploader:
    """Stores uploaded files and repositories below a base directory."""

    def __init__(self, base_dir: str, base_url: str | None = None) -> None:
        self.base_dir = base_dir
        self.base_url = base_url.rstrip("/") if base_url else None

    def _url(self, relative: str, target: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{relative}"
        return Path(os.path.abspath(target)).as_uri()

    def _target(self, relative: str) -> tuple[str, str]:
        relative = posixpath.normpath(relative).lstrip("/")
        root = os.path.abspath(self.base_dir)
        target = os.path.normpath(os.path.join(root, relative))
        if os.path.commonpath([root, target]) != root:
            raise ServiceError(f"upload path {relative} escapes the storage")
        return relative, target

    def upload_file(self, file_name: str, upload_path: str) -> str:
        """Store the file under ``upload_path`` and return its URL."""
        relative, target = self._target(upload_path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.copyfile(file_name, target)
        return self._url(relative, target)

    def upload_repo(self, src: str, name: str) -> str:
        """Store the directory tree ``src`` under ``name`` and return its URL."""
        relative, target = self._target(name)
        shutil.copytree(src, target, symlinks=True, dirs_exist_ok=True)
        return self._url(relative, target)


class RepoBuilder(Service):
    """Builds the OSTree repositories that images and updates are served from."""

    service_name = "repobuilder"

    def __init__(
        self,
        store: Store | None = None,
        settings: Settings | None = None,
        account: str | None = None,
        logger: logging.Logger | None = None,
        *,
        uploader: Uploader | None = None,
        extractor: TarExtractor | None = None,
        fetch: Fetch | None = None,
        runner: Runner | None = None,
    ) -> None:
        super().__init__(store, settings, account, logger)
        self.uploader = uploader or Uploader(
            os.path.join(self.settings.repo_temp_path, "storage")
        )
        self.extractor = extractor or TarExtractor()
        self.fetch = fetch or _fetch
        self.runner = runner or _run_command

    def build_update_repo(self, update_id: int) -> UpdateTransaction:
        """Merge the commits of an update into one repo with static deltas and upload it."""
        update = self.store.get(UpdateTransaction, update_id)
        self.log.info("Starts building update repo...")
        if update is None:
            raise ServiceError("invalid models.UpdateTransaction Provided: nil pointer")
        if update.commit is None:
            raise ServiceError(
                "invalid models.UpdateTransaction.Commit Provided: nil pointer"
            )
        if update.repo is None:
            self.log.error("Repo is unavailable")
            raise ServiceError("repo unavailable")

        path = os.path.normpath(
            os.path.join(self.settings.repo_temp_path, "upd", str(update.id))
        )
        os.makedirs(path, mode=0o755, exist_ok=True)
        try:
            tar_file_name = self.download_version_repo(update.commit, path)
        except Exception as exc:
            raise ServiceError(f"error Upload repo repo :: {exc}") from exc
        try:
            self.extract_version_repo(update.commit, tar_file_name, path)
        except Exception as exc:
            raise ServiceError(f"error extracting repo :: {exc}") from exc

        if update.old_commits:
            stage_path = os.path.join(path, "staging")
            os.makedirs(stage_path, mode=0o755, exist_ok=True)
            for commit in update.old_commits:
                commit_path = os.path.join(stage_path, commit.ostree_commit)
                try:
                    tar_file_name = self.download_version_repo(commit, commit_path)
                except Exception as exc:
                    raise ServiceError(f"error Upload repo repo :: {exc}") from exc
                self.extract_version_repo(commit, tar_file_name, commit_path)
                self._pull_local_static_deltas(
                    update.commit,
                    commit,
                    os.path.join(path, "repo"),
                    os.path.join(commit_path, "repo"),
                )
            shutil.rmtree(stage_path)

        self.log.info("Upload repo")
        try:
            repo_url = self.uploader.upload_repo(
                os.path.join(path, "repo"), str(update.id)
            )
        except Exception as exc:
            raise _as_service_error(exc) from exc
        self.log.info("Finished uploading repo")

        update.repo.url = repo_url
        update.repo.status = RepoStatus.SUCCESS
        self.store.save(update)
        self.store.save(update.repo)
        return update

    def _mark_error(self, repo: Repo) -> None:
        repo.status = RepoStatus.ERROR
        self.store.save(repo)

    def import_repo(self, repo: Repo) -> Repo:
        """Download, upload and unpack the commit of a repo, then upload the repo itself."""
        commit = self.store.first(Commit, lambda c: c.repo_id == repo.id) or Commit()
        path = os.path.normpath(
            os.path.join(self.settings.repo_temp_path, str(repo.id))
        )
        self.log.debug("Importing repo into %s", path)
        os.makedirs(path, mode=0o755, exist_ok=True)

        try:
            tar_file_name = self.download_version_repo(commit, path)
        except Exception as exc:
            self._mark_error(repo)
            self.log.error("Error downloading repo: %s", exc)
            raise ServiceError("error downloading repo") from exc
        try:
            self.upload_version_repo(commit, tar_file_name)
        except Exception as exc:
            self._mark_error(repo)
            self.log.error("Error uploading repo: %s", exc)
            raise ServiceError(f"error Upload repo repo :: {exc}") from exc
        try:
            self.extract_version_repo(commit, tar_file_name, path)
        except Exception as exc:
            self._mark_error(repo)
            self.log.error("Error extracting repo: %s", exc)
            raise ServiceError(f"error extracting repo :: {exc}") from exc
        try:
            repo_url = self.uploader.upload_repo(
                os.path.join(path, "repo"), str(repo.id)
            )
        except Exception as exc:
            self.log.error("Error uploading repo: %s", exc)
            raise ServiceError(f"error uploading repo :: {exc}") from exc

        repo.url = repo_url
        repo.status = RepoStatus.SUCCESS
        self.store.save(repo)
        return repo

    def download_version_repo(self, commit: Commit | None, dest: str) -> str:
        """Download the commit's repo tarball into ``dest`` and return its path."""
        if commit is None:
            self.log.error("nil pointer to models.Commit provided")
            raise ServiceError("invalid Commit Provided: nil pointer")
        self.log.info("Downloading repo of commit %s", commit.id)
        os.makedirs(dest, mode=0o755, exist_ok=True)
        name = f"{commit.image_build_hash}.tar" if commit.image_build_hash else "repo.tar"
        tar_file_name = os.path.normpath(os.path.join(dest, name))
        try:
            self.fetch(commit.image_build_tar_url, tar_file_name)
        except Exception as exc:
            self.log.error("Error grabbing tar file: %s", exc)
            raise _as_service_error(exc) from exc
        self.log.info("Download finished")
        return tar_file_name

    def upload_version_repo(self, commit: Commit | None, tar_file_name: str) -> None:
        """Upload the commit's repo tarball and record its URL on the commit."""
        if commit is None or commit.repo_id is None:
            self.log.error("nil pointer to models.Commit provided")
            raise ServiceError("invalid Commit Provided: nil pointer")
        upload_path = posixpath.normpath(
            f"{commit.account}/tar/{commit.repo_id}/{tar_file_name}"
        )
        self.log.info("Uploading repo tarball to %s", upload_path)
        try:
            url = self.uploader.upload_file(tar_file_name, upload_path)
        except Exception as exc:
            raise ServiceError(
                f"error uploading the Tar :: {upload_path} :: {exc}"
            ) from exc
        commit.image_build_tar_url = url
        self.store.save(commit)
        self.log.info("Repo uploaded")

    def extract_version_repo(
        self, commit: Commit | None, tar_file_name: str, dest: str
    ) -> None:
        """Unpack the repo tarball into ``dest``, remove it, and commit the repo's version."""
        if commit is None:
            self.log.error("nil pointer to models.Commit provided")
            raise ServiceError("invalid Commit Provided: nil pointer")
        self.log.info("Extracting repo of commit %s", commit.id)
        with open(os.path.normpath(tar_file_name), "rb") as tar_file:
            self.extractor.extract(tar_file, os.path.normpath(dest))
        os.remove(tar_file_name)

        ref = commit.ostree_ref or self.settings.default_ostree_ref
        command = [
            self.settings.ostree_binary,
            "--repo",
            os.path.join(dest, "repo"),
            "commit",
            ref,
            "--add-metadata-string",
            f"version={commit.build_date}.{commit.build_number}",
        ]
        try:
            self.runner(command)
        except ServiceError as exc:
            self.log.error("ostree commit command failed: %s", exc)

    def _rev_parse(self, path: str, ref: str) -> str:
        return self.runner(
            [self.settings.ostree_binary, "rev-parse", "--repo", path, ref]
        ).strip()

    def _pull_local_static_deltas(
        self, update: Commit, old: Commit, update_repo: str, old_repo: str
    ) -> None:
        update_rev = self._rev_parse(update_repo, update.ostree_ref)
        old_rev = self._rev_parse(old_repo, old.ostree_ref)
        self.runner(
            [self.settings.ostree_binary, "--repo", update_repo, "pull-local", old_repo, old_rev]
        )
        self.runner(
            [
                self.settings.ostree_binary,
                "--repo",
                update_repo,
                "static-delta",
                "generate",
                "--from",
                old_rev,
                "--to",
                update_rev,
            ]
        )