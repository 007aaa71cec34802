# edgefleet

`edgefleet` holds the business logic of a fleet-management service for edge
devices. It takes image requests, follows each image through its commit and
installer builds, turns finished commits into OSTree repositories, customises
installer ISOs with a user name and SSH key, and flags which devices have an
update available.

It needs nothing beyond the standard library. Records live in an in-memory
`Store`; the image builder, the file storage and the event bus are small
objects with simple default behaviour that you can replace or subclass.

## Modules

| Module | Contents |
| --- | --- |
| `edgefleet.models` | Dataclass records `Image`, `ImageSet`, `Commit`, `Installer`, `Repo`, `ThirdPartyRepo`, `Device`, `UpdateTransaction`, `Package`, `PackageDiff`, `ImageUpdateAvailable`; the enums `ImageStatus`, `RepoStatus`, `ImageType`; `Image.has_output_type`; and `get_diff_on_update`, which lists the packages added, removed and upgraded between two images' commits. |
| `edgefleet.errors` | `ServiceError` and its subclasses (`BadRequestError`, `InternalServerError`, `ImageNotFoundError`, `ImageSetAlreadyExists`, `AccountNotSet`, `IDMustBeInteger`, `ImageUnDefined`, `ImageSetUnDefined`, `ImageVersionAlreadyExists`, `UpdateNotFoundError`, `ThirdPartyRepositoryNotFound`). Each has a `status_code` and a default message; two errors are equal when class and message match. |
| `edgefleet.base` | `Settings` (OSTree ref, temporary and template paths, the `ostree` binary, the kickstart injection script, the poll interval), the thread-safe `Store` (`add`, `save`, `get`, `find`, `first`, `delete`) and the `Service` base class with `require_account`. |
| `edgefleet.notifications` | `ImageNotification` (with `to_dict` and `to_json`), `EventNotification`, `RecipientNotification`, and `EventProducer`, whose `produce` keeps messages in its `messages` list. |
| `edgefleet.repo` | `RepoService.get_repo_by_id`. |
| `edgefleet.imagesets` | `ImageSetsService.get_image_set_by_id`, which returns the set with its images (an empty set for an unknown id). |
| `edgefleet.thirdpartyrepo` | `ThirdPartyRepoService`: create, get, update and delete an account's extra package repositories. |
| `edgefleet.repobuilder` | `RepoBuilder` downloads a commit's repo tarball, unpacks it with `TarExtractor`, runs `ostree commit`, merges older commits with static deltas for updates, and stores the result through an `Uploader`. `repo_rev_parse` resolves a ref with `ostree rev-parse`. |
| `edgefleet.status` | `ImageBuilderClient` and the status rules `set_final_image_status`, `set_error_status_on_image`, `set_building_status_for_retry`, `update_image_status` and `set_devices_update_availability`. |
| `edgefleet.installer` | `InstallerCustomizer` downloads an installer ISO, renders the `templateKickstart.ks` template for a `KickstartUser` (`{{.Sshkey}}`, `{{.Username}}`), runs the injection script, stores the ISO's SHA-256 on the installer, uploads the ISO and cleans up. |
| `edgefleet.pipeline` | `BuildPipeline`, which follows an image's build in a background thread and publishes build events. |
| `edgefleet.images` | `ImageService`, the entry point for creating, updating, retrying, resuming and querying images; `ImageDetail` package summaries; `validate_all_image_repos_are_from_account`. |

## Example

```python
from edgefleet.base import Settings, Store
from edgefleet.images import ImageService
from edgefleet.models import Commit, Image, ImageStatus, ImageType

store = Store()
service = ImageService(store, Settings(poll_interval=1.0), account="0000000")

image = Image(name="kiosk", commit=Commit(), output_types=[ImageType.COMMIT])
service.create_image(image, "0000000")

# The default ImageBuilderClient reports a job as building until told otherwise.
service.image_builder.statuses[image.commit.image_build_hash] = ImageStatus.ERROR
```

Queries that need an account (`get_image_by_id`,
`get_image_by_ostree_commit_hash`, `get_rollback_image`, the third party
repository lookups) use the `account` given to the service and raise
`AccountNotSet` without one.

## How an image is built

1. `ImageService.create_image` refuses a name that already has an image set in
   the account (`ImageSetAlreadyExists`), creates the set, composes the commit,
   stores the records and starts the `BuildPipeline`.
   `ImageService.update_image` adds a new version to an existing set once
   `check_if_is_latest_version` has confirmed the previous image is the newest;
   if the previous build succeeded, the set's version is raised and the
   previous commit's repository URL becomes the new commit's parent.
2. The pipeline polls the builder every `Settings.poll_interval` seconds until
   the commit is no longer building, fetches its metadata and creates its
   repository with the `RepoBuilder`.
3. If an installer is requested, the pipeline composes it, waits for it, and
   has the `InstallerCustomizer` add the user information.
4. `set_final_image_status` succeeds the image only when every requested
   output succeeded; an output still building becomes an error. On success,
   devices on earlier successful images of the set are flagged as having an
   update, and devices on the newest one are cleared.

A `KeyboardInterrupt` during processing marks the image `INTERRUPTED`.
`retry_create_image` composes the commit again and restarts processing;
`resume_create_image` restarts processing of a stored image as it is.

## Defaults of the pluggable parts

- `ImageBuilderClient` gives each compose a job id and reads the outcome from
  its `statuses`, `iso_urls` and `metadata` dictionaries, which you fill in.
- `Uploader` copies files and directory trees below a base directory and
  returns `file://` URLs, or URLs under `base_url` if one is given.
- `EventProducer` only collects messages; subclass it to deliver them.
  Without a producer, `send_image_notification` returns a notification with
  no account, context, events or recipients, and no build events are sent.

## What it does not do

There is no HTTP API, no command-line program and no persistent database:
the `Store` keeps records in memory for the life of the process. There is
no network client for a real image builder or message broker; connect one by
replacing the objects above.

## External tools

`RepoBuilder` runs the `ostree` binary named in `Settings`, and
`InstallerCustomizer` runs the configured kickstart injection script. Both
must be present on the host that performs builds; the query and status
functions need neither.