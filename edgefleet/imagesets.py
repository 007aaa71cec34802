"""Lookup of image sets and their images."""

from __future__ import annotations

from edgefleet.base import Service
from edgefleet.models import Image, ImageSet


class ImageSetsService(Service):
    """Business logic around image sets."""

    service_name = "image-sets"

    def get_image_set_by_id(self, image_set_id: int) -> ImageSet:
        """Return the image set with that id, its images filled in.

        An unknown id yields an empty image set rather than an error.
        """
        image_set = self.store.get(ImageSet, image_set_id)
        if image_set is None:
            image_set = ImageSet()
        image_set.images = self.store.find(
            Image, lambda image: image.image_set_id == image_set_id
        )
        return image_set