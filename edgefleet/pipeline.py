"""The background build of an image: commit, repository and installer."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from concurrent.futures import Future

from edgefleet.base import Service, Settings, Store
from edgefleet.errors import ImageNotFoundError, ServiceError
from edgefleet.installer import InstallerCustomizer
from edgefleet.models import Image, ImageStatus, ImageType, Repo, RepoStatus
from edgefleet.notifications import EventProducer
from edgefleet.repobuilder import RepoBuilder
from edgefleet.status import (
    ImageBuilderClient,
    set_error_status_on_image,
    set_final_image_status,
    update_image_status,
)

IMAGE_BUILD_TOPIC = "platform.edge.fleetmgmt.image-build"


class BuildPipeline(Service):
    """Follows an image build to its end and post-processes its outputs."""

    service_name = "image"

    def __init__(
        self,
        store: Store | None = None,
        settings: Settings | None = None,
        account: str | None = None,
        logger: logging.Logger | None = None,
        *,
        image_builder: ImageBuilderClient | None = None,
        repo_builder: RepoBuilder | None = None,
        installer_customizer: InstallerCustomizer | None = None,
        producer: EventProducer | None = None,
    ) -> None:
        super().__init__(store, settings, account, logger)
        self.image_builder = image_builder or ImageBuilderClient()
        self.repo_builder = repo_builder or RepoBuilder(
            self.store, self.settings, self.account
        )
        self.installer_customizer = installer_customizer or InstallerCustomizer(
            self.store, self.settings, self.account
        )
        self.producer = producer

    def start(self, image_id: int) -> threading.Thread:
        """Process the image's build in a background thread and return the thread."""

        def run() -> None:
            try:
                self.process_image(image_id)
            except Exception:
                self.log.exception("Processing of image %s failed", image_id)

        thread = threading.Thread(
            target=run, name=f"image-build-{image_id}", daemon=True
        )
        thread.start()
        return thread

    def process_image(self, image_id: int) -> Image:
        """Wait for the commit, then build the installer if one is asked for.

        An interrupt while processing marks the image as interrupted.
        """
        image = self.store.get(Image, image_id)
        if image is None:
            raise ImageNotFoundError()
        self.log.debug("Processing image build of image %s", image_id)
        try:
            try:
                self.process_commit(image)
            except Exception as exc:
                set_error_status_on_image(self.store, image, exc)
                self.log.error("Failed creating commit for image: %s", exc)

            if (
                image.commit is not None
                and image.commit.status == ImageStatus.SUCCESS
                and image.has_output_type(ImageType.INSTALLER)
            ):
                self.log.debug("Creating an installer for image %s", image.id)
                try:
                    _, done = self.create_installer_for_image(image)
                    done.result()
                except Exception as exc:
                    set_error_status_on_image(self.store, image, exc)
                    self.log.error("Failed creating installer for image: %s", exc)
        except KeyboardInterrupt:
            image.status = ImageStatus.INTERRUPTED
            self.store.save(image)
            self.log.debug("Image %s updated with interrupted status", image_id)
            raise
        self.log.debug("Processing image build is done: %s", image.status)
        return image

    def _wait_for(self, image: Image, part_name: str) -> Image:
        while True:
            image = update_image_status(self.store, self.image_builder, image)
            part = getattr(image, part_name)
            if part is None or part.status != ImageStatus.BUILDING:
                return image
            time.sleep(self.settings.poll_interval)

    def process_commit(self, image: Image) -> Image:
        """Wait until the commit is built, then create its repository."""
        self.log.debug("Processing image build commit")
        image = self._wait_for(image, "commit")
        self.publish_build_event("postProcessCommit", image)

        if image.commit is not None and image.commit.status == ImageStatus.SUCCESS:
            try:
                self.image_builder.get_metadata(image)
            except Exception as exc:
                self.log.error("Failed getting metadata from image builder: %s", exc)
                set_error_status_on_image(self.store, image, exc)
                raise
            self.create_repo_for_image(image)

        if not image.has_output_type(ImageType.INSTALLER):
            image.installer = None
            set_final_image_status(self.store, image)
        self.log.debug("Processing commit is done")
        return image

    def process_installer(self, image: Image) -> Image:
        """Wait until the installer is built, customise it and set the final status."""
        self.log.debug("Post processing the installer for the image")
        image = self._wait_for(image, "installer")
        self.publish_build_event("postProcessInstaller", image)

        if image.installer is not None and image.installer.status == ImageStatus.SUCCESS:
            self.installer_customizer.add_user_info(image)
        set_final_image_status(self.store, image)
        self.log.debug("Processing image installer is done: %s", image.status)
        return image

    def create_repo_for_image(self, image: Image) -> Repo:
        """Create the OSTree repository that hosts the image's commit."""
        if image.commit is None:
            raise ServiceError("image has no commit")
        self.log.info("Creating OSTree repo for image")
        repo = self.store.add(Repo(status=RepoStatus.BUILDING))
        image.commit.repo = repo
        image.commit.repo_id = repo.id
        self.store.save(image.commit)
        repo = self.repo_builder.import_repo(repo)
        self.log.info("OSTree repo is ready")
        return repo

    def create_installer_for_image(self, image: Image) -> tuple[Image, Future]:
        """Request the installer and process it in the background.

        Returns the image and a future holding the processed image, or the
        error that processing the installer raised.
        """
        if image.installer is None:
            raise ServiceError("image has no installer")
        image.image_type = ImageType.INSTALLER
        image.installer.status = ImageStatus.BUILDING
        self.store.save(image)
        self.store.save(image.installer)
        image = self.image_builder.compose_installer(image)

        done: Future = Future()
        done.set_running_or_notify_cancel()

        def run() -> None:
            try:
                done.set_result(self.process_installer(image))
            except BaseException as exc:  # handed over to whoever waits
                done.set_exception(exc)

        threading.Thread(
            target=run, name=f"installer-build-{image.id}", daemon=True
        ).start()
        return image, done

    def publish_build_event(self, key: str, image: Image) -> bool:
        """Send the image as a build event; tell whether a producer took it."""
        if self.producer is None:
            return False
        value = json.dumps(dataclasses.asdict(image), default=str)
        try:
            self.producer.produce(IMAGE_BUILD_TOPIC, key, value)
        except Exception as exc:
            self.log.error("Error sending message: %s", exc)
            return False
        self.log.debug("%s message was produced to topic %s", key, IMAGE_BUILD_TOPIC)
        return True