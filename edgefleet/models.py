"""Records handled by the image, repository and device services."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ImageStatus(str, Enum):
    """Build status of an image, its commit and its installer."""

    CREATED = "CREATED"
    BUILDING = "BUILDING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"
    INTERRUPTED = "INTERRUPTED"

    def __str__(self) -> str:
        return self.value


class RepoStatus(str, Enum):
    """Status of an OSTree repository."""

    BUILDING = "BUILDING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"

    def __str__(self) -> str:
        return self.value


class ImageType(str, Enum):
    """Output types an image can be built into."""

    COMMIT = "rhel-edge-commit"
    INSTALLER = "rhel-edge-installer"

    def __str__(self) -> str:
        return self.value


@dataclass
class Package:
    """An RPM package, either requested or installed."""

    name: str
    arch: str = ""
    version: str = ""
    release: str = ""
    epoch: str = ""


@dataclass(eq=False)
class Repo:
    """An OSTree repository hosting a commit."""

    id: int = 0
    url: str = ""
    status: RepoStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(eq=False)
class Commit:
    """An OSTree commit built for an image."""

    id: int = 0
    account: str = ""
    status: ImageStatus = ImageStatus.CREATED
    ostree_commit: str = ""
    ostree_ref: str = ""
    ostree_parent_commit: str = ""
    image_build_hash: str = ""
    image_build_tar_url: str = ""
    build_date: str = ""
    build_number: int = 0
    repo_id: int | None = None
    repo: Repo | None = None
    installed_packages: list[Package] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(eq=False)
class Installer:
    """An installer ISO built for an image."""

    id: int = 0
    account: str = ""
    status: ImageStatus = ImageStatus.CREATED
    image_build_iso_url: str = ""
    ssh_key: str = ""
    username: str = ""
    checksum: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(eq=False)
class ThirdPartyRepo:
    """A package repository supplied by the account."""

    id: int = 0
    name: str = ""
    url: str = ""
    description: str = ""
    account: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(eq=False)
class ImageSet:
    """The set of all versions of one image."""

    id: int = 0
    name: str = ""
    version: int = 0
    account: str = ""
    images: list[Image] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(eq=False)
class Image:
    """One version of an image and its build outputs."""

    id: int = 0
    name: str = ""
    account: str = ""
    distribution: str = ""
    description: str = ""
    version: int = 1
    status: ImageStatus = ImageStatus.CREATED
    image_type: ImageType | None = None
    output_types: list[str] = field(default_factory=list)
    commit_id: int | None = None
    commit: Commit | None = None
    installer_id: int | None = None
    installer: Installer | None = None
    image_set_id: int | None = None
    packages: list[Package] = field(default_factory=list)
    custom_packages: list[Package] = field(default_factory=list)
    third_party_repositories: list[ThirdPartyRepo] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has_output_type(self, output_type: str) -> bool:
        """Tell whether the image is to be built into the given output type."""
        return output_type in self.output_types


@dataclass(eq=False)
class Device:
    """A device running an image."""

    id: int = 0
    uuid: str = ""
    account: str = ""
    image_id: int = 0
    update_available: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(eq=False)
class UpdateTransaction:
    """An update of devices to a commit, with the commits it replaces."""

    id: int = 0
    account: str = ""
    status: str = ""
    commit_id: int | None = None
    commit: Commit | None = None
    old_commits: list[Commit] = field(default_factory=list)
    repo_id: int | None = None
    repo: Repo | None = None
    devices: list[Device] = field(default_factory=list)
    dispatch_records: list[object] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PackageDiff:
    """Packages added, removed and upgraded between two images."""

    added: list[Package] = field(default_factory=list)
    removed: list[Package] = field(default_factory=list)
    upgraded: list[Package] = field(default_factory=list)


@dataclass
class ImageUpdateAvailable:
    """An image that an update can go to, with its package differences."""

    image: Image
    package_diff: PackageDiff = field(default_factory=PackageDiff)


_SEGMENT = re.compile(r"\d+|[A-Za-z]+")


def _compare_segments(left: str, right: str) -> int:
    if left == right:
        return 0
    left_parts = _SEGMENT.findall(left)
    right_parts = _SEGMENT.findall(right)
    for a, b in zip(left_parts, right_parts):
        a_digit, b_digit = a.isdigit(), b.isdigit()
        if a_digit != b_digit:
            return 1 if a_digit else -1
        if a_digit:
            a_num, b_num = int(a), int(b)
            if a_num != b_num:
                return 1 if a_num > b_num else -1
        elif a != b:
            return 1 if a > b else -1
    return (len(left_parts) > len(right_parts)) - (len(left_parts) < len(right_parts))


def _compare_packages(left: Package, right: Package) -> int:
    left_epoch = int(left.epoch or 0)
    right_epoch = int(right.epoch or 0)
    if left_epoch != right_epoch:
        return 1 if left_epoch > right_epoch else -1
    return _compare_segments(left.version, right.version) or _compare_segments(
        left.release, right.release
    )


def _installed(image: Image) -> list[Package]:
    return list(image.commit.installed_packages) if image.commit else []


def get_diff_on_update(image: Image, update: Image) -> PackageDiff:
    """Compare the installed packages of ``image`` with those of ``update``.

    Packages only in ``update`` are added, packages only in ``image`` are
    removed, and packages in both whose version in ``update`` is newer are
    upgraded (reported with their version in ``update``).
    """
    initial = _installed(image)
    updated = _installed(update)
    initial_by_name = {pkg.name: pkg for pkg in initial}
    updated_names = {pkg.name for pkg in updated}

    added: list[Package] = []
    upgraded: list[Package] = []
    for pkg in updated:
        previous = initial_by_name.get(pkg.name)
        if previous is None:
            added.append(pkg)
        elif _compare_packages(pkg, previous) > 0:
            upgraded.append(pkg)
    removed = [pkg for pkg in initial if pkg.name not in updated_names]
    return PackageDiff(added=added, removed=removed, upgraded=upgraded)