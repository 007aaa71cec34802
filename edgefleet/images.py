"""Creation, update and lookup of images and their image sets."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from edgefleet.base import Service, Settings, Store
from edgefleet.errors import (
    BadRequestError,
    IDMustBeInteger,
    ImageNotFoundError,
    ImageSetAlreadyExists,
    ImageSetUnDefined,
    ImageUnDefined,
    ImageVersionAlreadyExists,
    AccountNotSet,
    ServiceError,
)
from edgefleet.models import (
    Image,
    ImageSet,
    ImageStatus,
    ImageType,
    ImageUpdateAvailable,
    ThirdPartyRepo,
    get_diff_on_update,
)
from edgefleet.notifications import (
    EventNotification,
    EventProducer,
    ImageNotification,
    RecipientNotification,
)
from edgefleet.pipeline import BuildPipeline
from edgefleet.repo import RepoService
from edgefleet.status import (
    ImageBuilderClient,
    set_building_status_for_retry,
    set_devices_update_availability,
    set_error_status_on_image,
    set_final_image_status,
    update_image_status,
)

_NOTIFICATION_TOPIC = "platform.notifications.ingress"
_NOTIFICATION_VERSION = "v1.1.0"
_NOTIFICATION_BUNDLE = "edge"
_NOTIFICATION_APPLICATION = "fleet-management"
_NOTIFICATION_EVENT_TYPE_IMAGE = "image-creation"
_NOTIFICATION_USER = "fleet-management"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def validate_all_image_repos_are_from_account(
    store: Store, account: str, repos: list[ThirdPartyRepo]
) -> list[ThirdPartyRepo]:
    """Check the account of third party repositories used by an image.

    Raises BadRequestError when no account is given; returns the stored
    repositories of the account among ``repos``.
    """
    if not account:
        raise BadRequestError("repository information is not valid")
    if not repos:
        return []
    ids = {repo.id for repo in repos}
    return store.find(
        ThirdPartyRepo, lambda r: r.account == account and r.id in ids
    )


@dataclass
class ImageDetail:
    """An image with counts of its packages and of its last update's changes."""

    image: Image
    additional_packages: int = 0
    packages: int = 0
    update_added: int = 0
    update_removed: int = 0
    update_updated: int = 0


class ImageService(Service):
    """Business logic of creating and updating edge images."""

    service_name = "image"

    def __init__(
        self,
        store: Store | None = None,
        settings: Settings | None = None,
        account: str | None = None,
        logger: logging.Logger | None = None,
        *,
        image_builder: ImageBuilderClient | None = None,
        repo_service: RepoService | None = None,
        pipeline: BuildPipeline | None = None,
        producer: EventProducer | None = None,
    ) -> None:
        super().__init__(store, settings, account, logger)
        self.image_builder = image_builder or ImageBuilderClient()
        self.repo_service = repo_service or RepoService(
            self.store, self.settings, self.account
        )
        self.producer = producer
        self.pipeline = pipeline or BuildPipeline(
            self.store,
            self.settings,
            self.account,
            image_builder=self.image_builder,
            producer=producer,
        )

    def _prepare_built_image(self, image: Image, account: str) -> None:
        if image.commit is None:
            raise ServiceError("image has no commit")
        image.commit.account = account
        image.commit.status = ImageStatus.BUILDING
        image.status = ImageStatus.BUILDING
        if image.has_output_type(ImageType.INSTALLER):
            image.image_type = ImageType.INSTALLER
            if image.installer is None:
                raise ServiceError("image has no installer")
            image.installer.status = ImageStatus.CREATED
            image.installer.account = image.account
            self.store.save(image.installer)
        else:
            image.image_type = ImageType.COMMIT
        validate_all_image_repos_are_from_account(
            self.store, image.account, image.third_party_repositories
        )
        self.store.save(image.commit)
        self.store.add(image)

    def create_image(self, image: Image, account: str) -> Image:
        """Create a new image set with the image and start building it."""
        try:
            self.send_image_notification(image)
        except Exception as exc:
            self.log.error("Error to send notification: %s", exc)

        if self.store.first(
            ImageSet, lambda s: s.name == image.name and s.account == account
        ):
            self.log.error("ImageSet %s already exists", image.name)
            raise ImageSetAlreadyExists()

        image_set = self.store.add(
            ImageSet(account=account, name=image.name, version=image.version)
        )
        image.account = account
        image.image_set_id = image_set.id
        image = self.image_builder.compose_commit(image)
        self._prepare_built_image(image, account)
        self.pipeline.start(image.id)
        return image

    def update_image(self, image: Image, previous_image: Image | None) -> Image:
        """Add ``image`` as a new version after ``previous_image`` and start building it."""
        self.log.info("Updating image...")
        if previous_image is None:
            raise ImageNotFoundError()
        try:
            self.check_if_is_latest_version(previous_image)
        except ServiceError as exc:
            raise BadRequestError(
                "only the latest updated image can be modified"
            ) from exc

        image.image_set_id = previous_image.image_set_id
        image.account = previous_image.account

        if previous_image.status == ImageStatus.SUCCESS:
            image_set = self.store.get(ImageSet, previous_image.image_set_id)
            if image_set is None:
                self.log.error("Error retrieving the image set from parent image")
                raise ServiceError("record not found")
            image_set.version += 1
            self.store.save(image_set)

            repo_id = previous_image.commit.repo_id if previous_image.commit else None
            commit_id = image.commit.id if image.commit else 0
            try:
                repo = self.repo_service.get_repo_by_id(repo_id)
            except ServiceError as exc:
                self.log.error("Commit repo wasn't found on the database: %s", exc)
                raise BadRequestError(
                    f"Commit Repo wasn't found in the database: #{commit_id}"
                ) from exc
            if image.commit is None:
                raise ServiceError("image has no commit")
            image.commit.ostree_parent_commit = repo.url
            if not image.commit.ostree_ref:
                previous_ref = (
                    previous_image.commit.ostree_ref if previous_image.commit else ""
                )
                image.commit.ostree_ref = (
                    previous_ref or self.settings.default_ostree_ref
                )
        else:
            self.log.info(
                "Creating an update based on image %s whose status is not success",
                previous_image.id,
            )

        image = self.image_builder.compose_commit(image)
        self._prepare_built_image(image, previous_image.account)
        self.log.info("Image updated successfully - starting building process")
        self.pipeline.start(image.id)
        return image

    def check_image_name(self, name: str, account: str) -> bool:
        """Tell whether an image of that name exists for the account."""
        return (
            self.store.first(
                Image, lambda i: i.name == name and i.account == account
            )
            is not None
        )

    def get_image_by_id(self, image_id: str | int) -> Image:
        """Return the image with that id belonging to the request's account."""
        try:
            account = self.require_account()
        except AccountNotSet:
            self.log.error("Error retrieving account")
            raise
        try:
            wanted = int(image_id)
        except (TypeError, ValueError) as exc:
            raise IDMustBeInteger() from exc
        image = self.store.first(
            Image, lambda i: i.account == account and i.id == wanted
        )
        if image is None:
            raise ImageNotFoundError()
        return image

    def get_image_by_ostree_commit_hash(self, commit_hash: str) -> Image:
        """Return the account's image whose commit has that OSTree hash."""
        account = self.require_account()
        image = self.store.first(
            Image,
            lambda i: i.account == account
            and i.commit is not None
            and i.commit.ostree_commit == commit_hash,
        )
        if image is None:
            self.log.error("Error retrieving image by OSTree hash %s", commit_hash)
            raise ImageNotFoundError()
        return image

    def get_rollback_image(self, image: Image) -> Image:
        """Return the image of the same set that precedes ``image``."""
        account = self.require_account()
        candidates = self.store.find(
            Image,
            lambda i: i.account == account
            and (image.image_set_id is None or i.image_set_id == image.image_set_id)
            and i.id < image.id,
        )
        if not candidates:
            self.log.error("Error retrieving rollback image")
            raise ImageNotFoundError()
        return candidates[-1]

    def check_if_is_latest_version(self, previous_image: Image) -> None:
        """Raise unless ``previous_image`` is the latest version of its image set."""
        if previous_image.id == 0:
            raise ImageUnDefined()
        if not previous_image.account:
            raise AccountNotSet()
        if previous_image.image_set_id is None:
            raise ImageSetUnDefined()
        latest = self.store.first(
            Image,
            lambda i: i.account == previous_image.account
            and i.image_set_id == previous_image.image_set_id,
            order_key=lambda i: (-i.version, i.id),
        )
        if latest is None:
            raise ServiceError("record not found")
        if latest.id != previous_image.id:
            raise ImageVersionAlreadyExists()

    def set_final_image_status(self, image: Image) -> Image:
        """Set the image status from the status of each of its outputs."""
        return set_final_image_status(self.store, image)

    def set_error_status_on_image(
        self, error: BaseException | None, image: Image
    ) -> Image:
        """Mark the image and its outputs as failed."""
        return set_error_status_on_image(self.store, image, error)

    def set_building_status_on_image_to_retry_build(self, image: Image) -> Image:
        """Reset the image's statuses so that its build can be retried."""
        return set_building_status_for_retry(self.store, image)

    def set_devices_update_availability_from_image_set(
        self, account: str, image_set_id: int
    ) -> None:
        """Flag which devices of the image set have an update available."""
        set_devices_update_availability(self.store, account, image_set_id)

    def update_image_status(self, image: Image) -> Image:
        """Bring the statuses of the image's outputs up to date."""
        return update_image_status(self.store, self.image_builder, image)

    def get_update_info(self, image: Image) -> list[ImageUpdateAvailable]:
        """Return the earlier successful images of the set with their package differences."""
        earlier = self.store.find(
            Image,
            lambda i: i.image_set_id == image.image_set_id
            and i.status == ImageStatus.SUCCESS
            and i.id < image.id,
        )
        earlier.sort(key=lambda i: i.updated_at or _EPOCH, reverse=True)
        result: list[ImageUpdateAvailable] = []
        for update in earlier:
            diff = get_diff_on_update(image, update)
            shown = dataclasses.replace(update)
            if update.commit is not None:
                shown.commit = dataclasses.replace(
                    update.commit, installed_packages=[]
                )
            result.append(ImageUpdateAvailable(image=shown, package_diff=diff))
        return result

    def add_package_info(self, image: Image) -> ImageDetail:
        """Return the image with counts of its packages and of its last update."""
        detail = ImageDetail(
            image=image,
            packages=len(image.commit.installed_packages) if image.commit else 0,
            additional_packages=len(image.packages),
        )
        updates = self.get_update_info(image)
        if updates:
            diff = updates[-1].package_diff
            detail.update_added = len(diff.removed)
            detail.update_removed = len(diff.added)
            detail.update_updated = len(diff.upgraded)
        return detail

    def get_metadata(self, image: Image) -> Image:
        """Fill in the commit metadata of the image from the image builder."""
        try:
            return self.image_builder.get_metadata(image)
        except ServiceError as exc:
            self.log.error("Error retrieving metadata: %s", exc)
            raise

    def retry_create_image(self, image: Image) -> Image:
        """Compose the image's commit again and restart its build."""
        image = self.image_builder.compose_commit(image)
        try:
            self.set_building_status_on_image_to_retry_build(image)
        except Exception as exc:
            self.log.error("Failed setting image status: %s", exc)
            return image
        self.pipeline.start(image.id)
        return image

    def resume_create_image(self, image_id: int) -> Image:
        """Restart the build of a stored image without composing it again."""
        image = self.store.get(Image, image_id)
        if image is None:
            raise ImageNotFoundError()
        self.log.debug("Resuming the build of image %s", image_id)
        self.set_building_status_on_image_to_retry_build(image)
        self.pipeline.start(image.id)
        return image

    def send_image_notification(self, image: Image) -> ImageNotification:
        """Build the image creation notification and send it if a producer is set."""
        timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
        if self.producer is None:
            return ImageNotification(
                version=_NOTIFICATION_VERSION,
                bundle=_NOTIFICATION_BUNDLE,
                application=_NOTIFICATION_APPLICATION,
                event_type=_NOTIFICATION_EVENT_TYPE_IMAGE,
                timestamp=timestamp,
                account="",
                context="",
                events=[],
                recipients=[],
            )
        notify = ImageNotification(
            version=_NOTIFICATION_VERSION,
            bundle=_NOTIFICATION_BUNDLE,
            application=_NOTIFICATION_APPLICATION,
            event_type=_NOTIFICATION_EVENT_TYPE_IMAGE,
            timestamp=timestamp,
            account=image.account,
            context=f'{{  "ImageName" : "{image.name}"}}',
            events=[
                EventNotification(
                    metadata={}, payload=f'{{  "ImageId" : "{image.id}"}}'
                )
            ],
            recipients=[
                RecipientNotification(
                    only_admins=False,
                    ignore_user_preferences=False,
                    users=[_NOTIFICATION_USER],
                )
            ],
        )
        try:
            self.producer.produce(
                _NOTIFICATION_TOPIC, "ImageCreationStarts", notify.to_json()
            )
        except Exception as exc:
            self.log.error("Error on produce: %s", exc)
            return notify
        self.log.info("Notification was produced to topic %s", _NOTIFICATION_TOPIC)
        return notify