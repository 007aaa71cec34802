"""Customisation of installer ISOs with the user's account and SSH key."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import subprocess
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass

from edgefleet.base import Service, Settings, Store
from edgefleet.errors import ServiceError
from edgefleet.models import Image
from edgefleet.repobuilder import Uploader

Fetch = Callable[[str, str], None]
Runner = Callable[[list[str]], str]

KICKSTART_TEMPLATE = "templateKickstart.ks"
_FIELD = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")


def _fetch(url: str, path: str) -> None:
    try:
        with urllib.request.urlopen(url) as response, open(path, "wb") as out:  # noqa: S310
            shutil.copyfileobj(response, out)
    except (OSError, ValueError) as exc:
        raise ServiceError(f"error downloading {url}: {exc}") from exc


def _run(args: list[str]) -> str:
    try:
        result = subprocess.run(args, check=True, capture_output=True, text=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ServiceError(f"command {' '.join(args)} failed: {exc}") from exc
    return result.stdout


@dataclass
class KickstartUser:
    """The values put into the kickstart template."""

    ssh_key: str
    username: str

    def render(self, template: str) -> str:
        """Fill the ``{{.Sshkey}}`` and ``{{.Username}}`` fields of a template."""
        values = {"Sshkey": self.ssh_key, "Username": self.username}

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in values:
                raise ServiceError(f"can't evaluate field {name} in kickstart template")
            return values[name]

        return _FIELD.sub(replace, template)


class InstallerCustomizer(Service):
    """Injects a kickstart with the user's account into an installer ISO."""

    service_name = "installer"

    def __init__(
        self,
        store: Store | None = None,
        settings: Settings | None = None,
        account: str | None = None,
        logger: logging.Logger | None = None,
        *,
        uploader: Uploader | None = None,
        fetch: Fetch | None = None,
        runner: Runner | None = None,
    ) -> None:
        super().__init__(store, settings, account, logger)
        self.uploader = uploader or Uploader(
            os.path.join(self.settings.repo_temp_path, "storage")
        )
        self.fetch = fetch or _fetch
        self.runner = runner or _run

    def _work_dir(self, image_id: int) -> str:
        return os.path.join(self.settings.iso_work_path, f"workdir{image_id}")

    def add_user_info(self, image: Image) -> Image:
        """Download the ISO, inject the kickstart, checksum and re-upload it."""
        if image.installer is None:
            raise ServiceError("image has no installer")
        installer = image.installer
        work_path = self.settings.iso_work_path
        iso_name = os.path.join(work_path, image.name)
        kickstart = os.path.join(
            work_path, f"finalKickstart-{image.account}_{image.id}.ks"
        )

        steps = [
            ("error downloading ISO file", lambda: self.download_iso(iso_name, installer.image_build_iso_url)),
            ("error adding ssh key to kickstart file", lambda: self.write_kickstart(installer.ssh_key, installer.username, kickstart)),
            ("error executing fleetkick script", lambda: self.inject_kickstart(kickstart, iso_name, image.id)),
            ("error calculating checksum for ISO", lambda: self.calculate_checksum(iso_name, image)),
            ("error uploading ISO", lambda: self.upload_iso(image, iso_name)),
            ("error cleaning files", lambda: self.clean_files(kickstart, iso_name, image.id)),
        ]
        for message, step in steps:
            try:
                step()
            except Exception as exc:
                raise ServiceError(f"{message} :: {exc}") from exc
        self.log.debug("Post installer ISO processing complete")
        return image

    def write_kickstart(self, ssh_key: str, username: str, kickstart: str) -> str:
        """Render the kickstart template with the user into ``kickstart``."""
        template_path = os.path.join(self.settings.templates_path, KICKSTART_TEMPLATE)
        self.log.debug("Opening kickstart template %s", template_path)
        with open(template_path, encoding="utf-8") as handle:
            template = handle.read()
        content = KickstartUser(ssh_key=ssh_key, username=username).render(template)
        with open(kickstart, "w", encoding="utf-8") as handle:
            handle.write(content)
        return kickstart

    def download_iso(self, iso_name: str, url: str) -> str:
        """Download the ISO at ``url`` into ``iso_name``."""
        self.log.debug("Downloading ISO from %s", url)
        self.fetch(url, iso_name)
        return iso_name

    def inject_kickstart(self, kickstart: str, iso_name: str, image_id: int) -> str:
        """Run the fleetkick script that puts the kickstart into the ISO."""
        work_dir = self._work_dir(image_id)
        os.mkdir(work_dir, 0o750)
        output = self.runner(
            [self.settings.fleetkick_script, kickstart, iso_name, iso_name, work_dir]
        )
        self.log.info("Fleetkick output: %s", output)
        return output

    def calculate_checksum(self, iso_path: str, image: Image) -> str:
        """Store the SHA-256 of the ISO on the image's installer and return it."""
        if image.installer is None:
            raise ServiceError("image has no installer")
        digest = hashlib.sha256()
        with open(os.path.normpath(iso_path), "rb") as handle:
            for chunk in iter(lambda: handle.read(1 << 16), b""):
                digest.update(chunk)
        image.installer.checksum = digest.hexdigest()
        self.store.save(image.installer)
        self.log.info("Checksum calculated: %s", image.installer.checksum)
        return image.installer.checksum

    def upload_iso(self, image: Image, iso_name: str) -> str:
        """Upload the finished ISO and record its URL on the installer."""
        if image.installer is None:
            raise ServiceError("image has no installer")
        upload_path = f"{image.account}/isos/{image.name}.iso"
        try:
            url = self.uploader.upload_file(iso_name, upload_path)
        except Exception as exc:
            raise ServiceError(
                f"error uploading the ISO :: {upload_path} :: {exc}"
            ) from exc
        image.installer.image_build_iso_url = url
        self.store.save(image.installer)
        return url

    def clean_files(self, kickstart: str, iso_name: str, image_id: int) -> None:
        """Remove the kickstart, the local ISO and the work directory."""
        os.remove(kickstart)
        os.remove(iso_name)
        work_dir = self._work_dir(image_id)
        if os.path.exists(work_dir):
            shutil.rmtree(work_dir)