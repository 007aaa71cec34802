"""Build status bookkeeping for images, their commits and installers."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from edgefleet.base import Store
from edgefleet.errors import ServiceError
from edgefleet.models import (
    Device,
    Image,
    ImageStatus,
    ImageType,
    Package,
)

log = logging.getLogger("edgefleet.status")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ImageBuilderClient:
    """Keeps track of composes requested from the image builder.

    Every compose gets a job id. The outcome of a job is read from
    ``statuses`` (job id to status), the ISO location of an installer job
    from ``iso_urls`` and the metadata of a commit job from ``metadata``
    (job id to the OSTree commit hash and the installed packages). A job
    without an entry in ``statuses`` is still building.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, ImageStatus] = {}
        self.iso_urls: dict[str, str] = {}
        self.metadata: dict[str, tuple[str, list[Package]]] = {}
        self.installer_jobs: dict[int, str] = {}

    def compose_commit(self, image: Image) -> Image:
        """Request the OSTree commit of an image and mark it as building."""
        if image.commit is None:
            raise ServiceError("image has no commit to compose")
        image.commit.image_build_hash = uuid.uuid4().hex
        image.commit.status = ImageStatus.BUILDING
        image.status = ImageStatus.BUILDING
        return image

    def compose_installer(self, image: Image) -> Image:
        """Request the installer ISO of an image and mark it as building."""
        if image.installer is None:
            raise ServiceError("image has no installer to compose")
        self.installer_jobs[image.id] = uuid.uuid4().hex
        image.installer.status = ImageStatus.BUILDING
        image.status = ImageStatus.BUILDING
        return image

    def get_commit_status(self, image: Image) -> Image:
        """Bring the commit status of the image up to date."""
        if image.commit is None or not image.commit.image_build_hash:
            raise ServiceError("no commit compose for image")
        status = self.statuses.get(image.commit.image_build_hash)
        if status is not None and status != ImageStatus.BUILDING:
            image.commit.status = status
            if status == ImageStatus.ERROR:
                image.status = ImageStatus.ERROR
        return image

    def get_installer_status(self, image: Image) -> Image:
        """Bring the installer status of the image up to date."""
        job = self.installer_jobs.get(image.id)
        if image.installer is None or job is None:
            raise ServiceError("no installer compose for image")
        status = self.statuses.get(job)
        if status is not None and status != ImageStatus.BUILDING:
            image.installer.status = status
            if status == ImageStatus.SUCCESS:
                image.installer.image_build_iso_url = self.iso_urls.get(job, "")
            elif status == ImageStatus.ERROR:
                image.status = ImageStatus.ERROR
        return image

    def get_metadata(self, image: Image) -> Image:
        """Fill in the OSTree commit hash and installed packages of the commit."""
        if image.commit is None:
            raise ServiceError("image has no commit")
        found = self.metadata.get(image.commit.image_build_hash)
        if found is None:
            raise ServiceError(
                f"no metadata for compose {image.commit.image_build_hash!r}"
            )
        ostree_commit, packages = found
        image.commit.ostree_commit = ostree_commit
        image.commit.installed_packages = list(packages)
        return image


def set_devices_update_availability(
    store: Store, account: str, image_set_id: int
) -> None:
    """Flag the devices of an image set that run an image older than the latest.

    Devices on the latest successful image are marked as having no update
    available; devices on earlier successful images of the set are marked
    as having one. Raises ServiceError when the set has no successful image.
    """
    successful = store.find(
        Image,
        lambda i: i.account == account
        and i.image_set_id == image_set_id
        and i.status == ImageStatus.SUCCESS,
    )
    if not successful:
        raise ServiceError("record not found")
    last = max(successful, key=lambda i: (i.created_at or _EPOCH, i.id))
    last_created = last.created_at or _EPOCH

    for device in store.find(
        Device,
        lambda d: d.account == account and d.update_available and d.image_id == last.id,
    ):
        device.update_available = False
        store.save(device)

    prior_ids = {
        image.id
        for image in successful
        if (image.created_at or _EPOCH) < last_created
    }
    for device in store.find(
        Device,
        lambda d: d.account == account
        and not d.update_available
        and d.image_id in prior_ids,
    ):
        device.update_available = True
        store.save(device)


def set_final_image_status(store: Store, image: Image) -> Image:
    """Set the image status from the status of each of its outputs.

    The image succeeds only if every output succeeded; an output still
    building is turned into an error.
    """
    success = True
    for output in image.output_types:
        if output == ImageType.COMMIT:
            part = image.commit
        elif output == ImageType.INSTALLER:
            part = image.installer
        else:
            continue
        if part is None or part.status != ImageStatus.SUCCESS:
            success = False
        if part is not None and part.status == ImageStatus.BUILDING:
            part.status = ImageStatus.ERROR
            store.save(part)

    image.status = ImageStatus.SUCCESS if success else ImageStatus.ERROR
    store.save(image)
    log.debug("Setting final image status to %s", image.status)

    if image.image_set_id is not None and image.status == ImageStatus.SUCCESS:
        try:
            set_devices_update_availability(store, image.account, image.image_set_id)
        except ServiceError as exc:
            log.error("Error while setting devices update availability flag: %s", exc)
    return image


def set_error_status_on_image(
    store: Store, image: Image, error: BaseException | None = None
) -> Image:
    """Mark the image, its commit and its installer as failed."""
    if image.status == ImageStatus.ERROR:
        return image
    image.status = ImageStatus.ERROR
    store.save(image)
    if image.commit is not None:
        image.commit.status = ImageStatus.ERROR
        store.save(image.commit)
    if image.installer is not None:
        image.installer.status = ImageStatus.ERROR
        store.save(image.installer)
    if error is not None:
        log.error("Error setting image final status: %s", error)
    return image


def set_building_status_for_retry(store: Store, image: Image) -> Image:
    """Reset the statuses of an image so that its build can be retried.

    The commit's repo is dropped so that it is recreated from scratch.
    """
    image.status = ImageStatus.BUILDING
    if image.commit is not None:
        image.commit.status = ImageStatus.BUILDING
        image.commit.repo = None
        store.save(image.commit)
    if image.installer is not None:
        image.installer.status = ImageStatus.CREATED
        store.save(image.installer)
    store.save(image)
    return image


def update_image_status(
    store: Store, builder: ImageBuilderClient, image: Image
) -> Image:
    """Ask the builder for the status of the outputs still building and store it."""
    if image.commit is not None and image.commit.status == ImageStatus.BUILDING:
        image = builder.get_commit_status(image)
        if image.commit.status != ImageStatus.BUILDING:
            store.save(image.commit)
    if image.installer is not None and image.installer.status == ImageStatus.BUILDING:
        image = builder.get_installer_status(image)
        if image.installer.status != ImageStatus.BUILDING:
            store.save(image.installer)
    if image.status != ImageStatus.BUILDING:
        store.save(image)
    return image