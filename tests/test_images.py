import json

import pytest

from edgefleet.base import Settings, Store
from edgefleet.errors import (
    AccountNotSet,
    BadRequestError,
    IDMustBeInteger,
    ImageNotFoundError,
    ImageSetAlreadyExists,
    ImageSetUnDefined,
    ImageUnDefined,
    ImageVersionAlreadyExists,
)
from edgefleet.images import ImageService, validate_all_image_repos_are_from_account
from edgefleet.models import (
    Commit,
    Device,
    Image,
    ImageSet,
    ImageStatus,
    ImageType,
    Installer,
    Package,
    Repo,
    ThirdPartyRepo,
)

ACCOUNT = "0000000"


class RecordingProducer:
    def __init__(self):
        self.sent = []

    def produce(self, topic, key, value):
        self.sent.append((topic, key, value))


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def service(store):
    return ImageService(store, Settings(poll_interval=3600), account=ACCOUNT)


def _versions(store):
    image_set = store.add(ImageSet(name="test", version=2, account=ACCOUNT))
    v1 = store.add(
        Image(
            commit=Commit(ostree_commit="hash-v1"),
            status=ImageStatus.SUCCESS,
            image_set_id=image_set.id,
            version=1,
            account=ACCOUNT,
        )
    )
    v2 = store.add(
        Image(
            commit=Commit(ostree_commit="hash-v2"),
            status=ImageStatus.SUCCESS,
            image_set_id=image_set.id,
            version=2,
            account=ACCOUNT,
        )
    )
    return v1, v2


def test_get_image_by_id_not_found(service):
    with pytest.raises(ImageNotFoundError):
        service.get_image_by_id("7")


def test_get_image_by_hash_not_found(service):
    with pytest.raises(ImageNotFoundError):
        service.get_image_by_ostree_commit_hash("word")


def test_get_image_by_id_requires_account(store):
    service = ImageService(store)
    with pytest.raises(AccountNotSet):
        service.get_image_by_id("1")


def test_get_image_by_id_must_be_integer(service):
    with pytest.raises(IDMustBeInteger):
        service.get_image_by_id("abc")


def test_get_image_by_id_found(store, service):
    v1, _ = _versions(store)
    assert service.get_image_by_id(str(v1.id)).id == v1.id


def test_get_image_by_hash_found(store, service):
    v1, _ = _versions(store)
    assert service.get_image_by_ostree_commit_hash("hash-v1").id == v1.id


def test_rollback_image_exists(store, service):
    v1, v2 = _versions(store)
    assert service.get_rollback_image(v2).id == v1.id


def test_rollback_image_missing(store, service):
    v1, _ = _versions(store)
    with pytest.raises(ImageNotFoundError):
        service.get_rollback_image(v1)


def test_update_image_without_previous(service):
    with pytest.raises(ImageNotFoundError):
        service.update_image(Image(), None)


def _previous(store, repo_id):
    image_set = store.add(ImageSet(account="acct-update", version=1))
    previous = Image(
        account="acct-update",
        status=ImageStatus.SUCCESS,
        commit=Commit(repo_id=repo_id),
        version=1,
        name="image name",
        image_set_id=image_set.id,
    )
    store.save(previous)
    # saving cascades the commit; keep the intended repo id
    previous.commit.repo_id = repo_id
    return image_set, previous


def test_update_image_sets_parent_commit_url(store, service):
    repo = store.add(Repo(url="https://repo.example.com/repo"))
    image_set, previous = _previous(store, repo.id)
    image = Image(
        account="acct-update",
        commit=Commit(),
        output_types=[ImageType.COMMIT],
        version=2,
        name=previous.name,
    )
    result = service.update_image(image, previous)
    assert result.commit.ostree_parent_commit == "https://repo.example.com/repo"
    assert result.commit.ostree_ref == Settings().default_ostree_ref
    assert result.status == ImageStatus.BUILDING
    assert result.image_set_id == image_set.id
    assert result.image_type == ImageType.COMMIT
    assert store.get(ImageSet, image_set.id).version == 2


def test_update_image_missing_repo(store, service):
    _, previous = _previous(store, 999)
    image = Image(commit=Commit(), output_types=[ImageType.COMMIT], version=2)
    with pytest.raises(BadRequestError):
        service.update_image(image, previous)


def test_update_image_not_latest(store, service):
    _, previous = _previous(store, None)
    store.add(
        Image(account="acct-update", image_set_id=previous.image_set_id, version=2)
    )
    with pytest.raises(BadRequestError) as info:
        service.update_image(Image(commit=Commit()), previous)
    assert info.value.message == "only the latest updated image can be modified"


def test_update_image_from_failed_previous_skips_repo(store, service):
    image_set = store.add(ImageSet(account="acct-failed", version=1))
    previous = store.add(
        Image(
            account="acct-failed",
            status=ImageStatus.ERROR,
            commit=Commit(),
            image_set_id=image_set.id,
        )
    )
    image = Image(commit=Commit(), output_types=[ImageType.COMMIT], version=2)
    result = service.update_image(image, previous)
    assert result.commit.ostree_parent_commit == ""
    assert result.account == "acct-failed"
    assert store.get(ImageSet, image_set.id).version == 1


@pytest.mark.parametrize(
    "status,expected",
    [
        (ImageStatus.SUCCESS, ImageStatus.SUCCESS),
        (ImageStatus.ERROR, ImageStatus.ERROR),
        (ImageStatus.BUILDING, ImageStatus.ERROR),
    ],
)
def test_final_status_commit(service, status, expected):
    image = Image(commit=Commit(status=status), output_types=[ImageType.COMMIT])
    service.set_final_image_status(image)
    assert image.status == expected
    if status == ImageStatus.BUILDING:
        assert image.commit.status == ImageStatus.ERROR


@pytest.mark.parametrize(
    "status,expected",
    [
        (ImageStatus.SUCCESS, ImageStatus.SUCCESS),
        (ImageStatus.ERROR, ImageStatus.ERROR),
        (ImageStatus.BUILDING, ImageStatus.ERROR),
    ],
)
def test_final_status_installer(service, status, expected):
    image = Image(
        installer=Installer(status=status), output_types=[ImageType.INSTALLER]
    )
    service.set_final_image_status(image)
    assert image.status == expected
    if status == ImageStatus.BUILDING:
        assert image.installer.status == ImageStatus.ERROR


@pytest.mark.parametrize(
    "status,expected",
    [
        (ImageStatus.SUCCESS, ImageStatus.SUCCESS),
        (ImageStatus.ERROR, ImageStatus.ERROR),
        (ImageStatus.BUILDING, ImageStatus.ERROR),
    ],
)
def test_final_status_installer_and_commit(service, status, expected):
    image = Image(
        installer=Installer(status=status),
        commit=Commit(status=ImageStatus.SUCCESS),
        output_types=[ImageType.INSTALLER, ImageType.COMMIT],
    )
    service.set_final_image_status(image)
    assert image.status == expected
    if status == ImageStatus.BUILDING:
        assert image.installer.status == ImageStatus.ERROR


def test_retry_build_status(service):
    image = Image(
        installer=Installer(status=ImageStatus.ERROR),
        commit=Commit(status=ImageStatus.ERROR),
        status=ImageStatus.ERROR,
        output_types=[ImageType.INSTALLER, ImageType.COMMIT],
    )
    service.set_building_status_on_image_to_retry_build(image)
    assert image.status == ImageStatus.BUILDING
    assert image.commit.status == ImageStatus.BUILDING
    assert image.installer.status == ImageStatus.CREATED


def test_error_status_on_image(service):
    image = Image(commit=Commit(), installer=Installer(), status=ImageStatus.BUILDING)
    service.set_error_status_on_image(RuntimeError("boom"), image)
    assert image.status == ImageStatus.ERROR
    assert image.commit.status == ImageStatus.ERROR
    assert image.installer.status == ImageStatus.ERROR


@pytest.fixture
def latest_setup(store):
    account = "acct-latest"
    image_set = store.add(ImageSet(account=account))
    images = {}
    for version in (1, 2, 3):
        images[version] = store.add(
            Image(account=account, image_set_id=image_set.id, version=version, name="same")
        )
    images["no_account"] = store.add(
        Image(image_set_id=image_set.id, version=4, name="same")
    )
    images["no_set"] = store.add(Image(account=account, version=4, name="same"))
    other_set = store.add(ImageSet(account=account))
    store.add(Image(account="acct-other", image_set_id=other_set.id, version=4))
    set2 = store.add(ImageSet(account=account))
    store.add(Image(account=account, image_set_id=set2.id, version=4))
    return account, image_set, images


def test_latest_version_image_undefined(service, latest_setup):
    account, image_set, _ = latest_setup
    with pytest.raises(ImageUnDefined):
        service.check_if_is_latest_version(
            Image(account=account, image_set_id=image_set.id, version=5)
        )


def test_latest_version_account_required(service, latest_setup):
    _, _, images = latest_setup
    with pytest.raises(AccountNotSet):
        service.check_if_is_latest_version(images["no_account"])


def test_latest_version_image_set_required(service, latest_setup):
    _, _, images = latest_setup
    with pytest.raises(ImageSetUnDefined):
        service.check_if_is_latest_version(images["no_set"])


@pytest.mark.parametrize("version", [1, 2])
def test_latest_version_newer_exists(service, latest_setup, version):
    _, _, images = latest_setup
    with pytest.raises(ImageVersionAlreadyExists):
        service.check_if_is_latest_version(images[version])


def test_latest_version_ok(service, latest_setup):
    _, _, images = latest_setup
    assert service.check_if_is_latest_version(images[3]) is None


def test_validate_repos_with_account(store):
    assert validate_all_image_repos_are_from_account(store, "00000", []) == []


def test_validate_repos_without_account(store):
    with pytest.raises(BadRequestError) as info:
        validate_all_image_repos_are_from_account(store, "", [])
    assert str(info.value) == "repository information is not valid"


def test_validate_repos_returns_account_repos(store):
    own = store.add(ThirdPartyRepo(name="own", url="https://own.example.com", account="a"))
    store.add(ThirdPartyRepo(name="other", url="https://other.example.com", account="b"))
    found = validate_all_image_repos_are_from_account(store, "a", [own])
    assert [repo.name for repo in found] == ["own"]


def test_send_image_notification_without_producer(store, service):
    v1, _ = _versions(store)
    notify = service.send_image_notification(service.get_image_by_id(str(v1.id)))
    assert notify.version == "v1.1.0"
    assert notify.event_type == "image-creation"


def test_send_image_notification_with_producer(store):
    producer = RecordingProducer()
    service = ImageService(store, Settings(poll_interval=3600), ACCOUNT, producer=producer)
    image = store.add(Image(name="edge", account=ACCOUNT, commit=Commit()))
    notify = service.send_image_notification(image)
    assert notify.account == ACCOUNT
    assert notify.events[0].payload == f'{{  "ImageId" : "{image.id}"}}'
    assert notify.recipients[0].users == ["fleet-management"]
    topic, key, value = producer.sent[0]
    assert topic == "platform.notifications.ingress"
    assert key == "ImageCreationStarts"
    assert json.loads(value)["version"] == "v1.1.0"


def test_devices_update_availability(store, service):
    account = "acct-devices"
    image_set = store.add(ImageSet(account=account, name="set-a"))
    images = [
        store.add(Image(status=ImageStatus.SUCCESS, image_set_id=image_set.id, account=account))
        for _ in range(4)
    ]
    devices = [
        store.add(
            Device(
                account=account,
                image_id=image.id,
                update_available=(index == len(images) - 1),
            )
        )
        for index, image in enumerate(images)
    ]
    other_set = store.add(ImageSet(account=account, name="set-b"))
    other_image = store.add(
        Image(status=ImageStatus.SUCCESS, image_set_id=other_set.id, account=account)
    )
    other_device = store.add(
        Device(account=account, image_id=other_image.id, update_available=True)
    )

    service.set_devices_update_availability_from_image_set(account, image_set.id)
    flags = [store.get(Device, d.id).update_available for d in devices]
    assert flags == [True, True, True, False]
    assert store.get(Device, other_device.id).update_available is True

    service.set_devices_update_availability_from_image_set(account, other_set.id)
    assert store.get(Device, other_device.id).update_available is False


def test_devices_update_availability_without_devices(store, service):
    image_set = store.add(ImageSet(account="acct-empty", name="set-c"))
    store.add(Image(status=ImageStatus.SUCCESS, image_set_id=image_set.id, account="acct-empty"))
    service.set_devices_update_availability_from_image_set("acct-empty", image_set.id)
    assert store.find(Device) == []


def test_create_image(store, service):
    image = Image(name="fresh", commit=Commit(), output_types=[ImageType.COMMIT])
    created = service.create_image(image, "acct-new")
    assert created.account == "acct-new"
    assert created.status == ImageStatus.BUILDING
    assert created.commit.status == ImageStatus.BUILDING
    assert created.commit.account == "acct-new"
    assert created.image_type == ImageType.COMMIT
    image_set = store.get(ImageSet, created.image_set_id)
    assert image_set.name == "fresh"
    assert store.get(Image, created.id) is created


def test_create_image_with_installer(store, service):
    image = Image(
        name="iso",
        commit=Commit(),
        installer=Installer(),
        output_types=[ImageType.COMMIT, ImageType.INSTALLER],
    )
    created = service.create_image(image, "acct-iso")
    assert created.image_type == ImageType.INSTALLER
    assert created.installer.status == ImageStatus.CREATED
    assert created.installer.account == "acct-iso"


def test_create_image_existing_set(store, service):
    store.add(ImageSet(name="taken", account="acct-taken"))
    with pytest.raises(ImageSetAlreadyExists):
        service.create_image(Image(name="taken", commit=Commit()), "acct-taken")


def test_check_image_name(store, service):
    store.add(Image(name="known", account="acct-name"))
    assert service.check_image_name("known", "acct-name") is True
    assert service.check_image_name("known", "acct-else") is False


def _update_setup(store):
    image_set = store.add(ImageSet(account=ACCOUNT, name="pkgs"))
    v1 = store.add(
        Image(
            account=ACCOUNT,
            status=ImageStatus.SUCCESS,
            image_set_id=image_set.id,
            commit=Commit(
                installed_packages=[Package("a"), Package("b"), Package("d")]
            ),
        )
    )
    v2 = store.add(
        Image(
            account=ACCOUNT,
            status=ImageStatus.SUCCESS,
            image_set_id=image_set.id,
            packages=[Package("extra")],
            commit=Commit(installed_packages=[Package("a"), Package("c")]),
        )
    )
    return v1, v2


def test_get_update_info(store, service):
    v1, v2 = _update_setup(store)
    updates = service.get_update_info(v2)
    assert [u.image.id for u in updates] == [v1.id]
    diff = updates[0].package_diff
    assert sorted(p.name for p in diff.added) == ["b", "d"]
    assert [p.name for p in diff.removed] == ["c"]
    assert updates[0].image.commit.installed_packages == []
    assert len(store.get(Image, v1.id).commit.installed_packages) == 3


def test_get_update_info_none(store, service):
    v1, _ = _update_setup(store)
    assert service.get_update_info(v1) == []


def test_add_package_info(store, service):
    _, v2 = _update_setup(store)
    detail = service.add_package_info(v2)
    assert detail.packages == 2
    assert detail.additional_packages == 1
    assert detail.update_added == 1
    assert detail.update_removed == 2
    assert detail.update_updated == 0


def test_resume_create_image_missing(service):
    with pytest.raises(ImageNotFoundError):
        service.resume_create_image(12345)


def test_retry_create_image(store, service):
    image = store.add(
        Image(account=ACCOUNT, status=ImageStatus.ERROR, commit=Commit(status=ImageStatus.ERROR))
    )
    retried = service.retry_create_image(image)
    assert retried.status == ImageStatus.BUILDING
    assert retried.commit.image_build_hash != ""
    assert retried.commit.status == ImageStatus.BUILDING


def test_get_metadata(store, service):
    image = Image(commit=Commit(image_build_hash="job-1"))
    service.image_builder.metadata["job-1"] = ("ostree-hash", [Package("vim")])
    result = service.get_metadata(image)
    assert result.commit.ostree_commit == "ostree-hash"
    assert [p.name for p in result.commit.installed_packages] == ["vim"]