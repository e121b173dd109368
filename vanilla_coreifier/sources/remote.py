"""Everest source backed by the latest stable release archive.

WHY: Most players do not have an Everest build lying around. The remote
source finds the newest stable release from the public version listing,
downloads its zip once, and serves files and modules straight out of the
archive for the rest of the install.

HOW: Construction runs three blocking steps — fetch and validate the
listing (httpx + jsonschema), download the selected archive to a fresh
temporary file, open it with zipfile. After that every capability reads
from the open ZipFile. The apphost templates are extracted lazily to a
temporary directory the first time they are asked for.

RULES:
- Selection: highest integer version among entries on the stable branch
- Every archive entry lives under "main/"; logical paths are relative to it
- Modules are buffered fully in memory, with their .pyc when present
- Any 2xx response counts as success, as with httpx raise_for_status()
- The ZipFile stays open for the source's whole lifetime; zipfile
  serialises reads on the shared handle, so concurrent lookups are safe
- release() closes the archive, deletes the temp zip and the extracted
  apphost directory; each step is attempted even if another fails
- Construction failures leave no temporary files behind
- No retries anywhere; failures are reported immediately
"""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tempfile
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Iterable, List, Optional

import httpx
import jsonschema

from vanilla_coreifier.config import (
    APPHOSTS_DIR,
    ARCHIVE_ROOT,
    STABLE_BRANCH,
    VERSIONS_URL,
    http_timeout,
)
from vanilla_coreifier.sources.base import (
    BaseSource,
    ModuleImage,
    SourceNotFoundError,
    bytecode_logical_path,
    logical_basename,
    module_logical_path,
    package_logical_dir,
)
from vanilla_coreifier.sources.models import ReleaseInfo, get_listing_schema

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK = 1024 * 1024


class RemoteSourceError(Exception):
    """Base class for failures while constructing a remote source.

    WHY: The orchestrator reports every remote failure the same way
    (fatal, before anything is installed) but tests and messages still
    need to tell the causes apart.
    """


class NoStableReleaseError(RemoteSourceError):
    """Raised when the listing has no entry on the stable branch."""


class DownloadFailedError(RemoteSourceError):
    """Raised on transport errors or non-2xx responses.

    RULES:
    - url holds the URL that failed
    """

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__("Download of {} failed: {}".format(url, message))


class MalformedListingError(RemoteSourceError):
    """Raised when the version listing is not valid JSON or fails the schema."""


class CorruptArchiveError(RemoteSourceError):
    """Raised when the downloaded archive cannot be opened or is unsafe."""


# ---------------------------------------------------------------------------
# Release selection
# ---------------------------------------------------------------------------


def parse_release_listing(data: object) -> List[ReleaseInfo]:
    """Validate a decoded listing against the schema and parse it.

    Raises:
        MalformedListingError: If the listing does not match the schema.
    """
    try:
        jsonschema.validate(instance=data, schema=get_listing_schema())
    except jsonschema.ValidationError as e:
        raise MalformedListingError("Version listing is malformed: {}".format(e.message)) from e
    return [ReleaseInfo.from_dict(entry) for entry in data]  # type: ignore[union-attr]


def select_stable_release(
    releases: Iterable[ReleaseInfo],
    branch: str = STABLE_BRANCH,
) -> ReleaseInfo:
    """Pick the release with the highest version on the given branch.

    RULES:
    - Only entries whose branch equals ``branch`` are candidates
    - On equal versions the first one listed wins
    - Raises NoStableReleaseError when there is no candidate
    """
    best: Optional[ReleaseInfo] = None
    for release in releases:
        if release.branch != branch:
            continue
        if best is None or release.version > best.version:
            best = release

    if best is None:
        raise NoStableReleaseError(
            "Couldn't find a release on the '{}' branch of Everest".format(branch)
        )
    return best


def fetch_latest_release(
    client: httpx.Client,
    url: str = VERSIONS_URL,
    branch: str = STABLE_BRANCH,
) -> ReleaseInfo:
    """GET the version listing and select the newest stable release."""
    try:
        resp = client.get(url)
    except httpx.HTTPError as e:
        raise DownloadFailedError(url, str(e)) from e
    if not resp.is_success:
        raise DownloadFailedError(url, "HTTP {}".format(resp.status_code))

    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedListingError("Version listing is not valid JSON") from e

    return select_stable_release(parse_release_listing(data), branch)


def download_to_tempfile(client: httpx.Client, url: str) -> Path:
    """Stream a URL into a fresh temporary file and return its path.

    RULES:
    - The temp file is deleted again when the download fails
    """
    fd, name = tempfile.mkstemp(prefix="everest-", suffix=".zip")
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as out:
            with client.stream("GET", url) as resp:
                if not resp.is_success:
                    raise DownloadFailedError(url, "HTTP {}".format(resp.status_code))
                for chunk in resp.iter_bytes(_DOWNLOAD_CHUNK):
                    out.write(chunk)
    except httpx.HTTPError as e:
        path.unlink(missing_ok=True)
        raise DownloadFailedError(url, str(e)) from e
    except BaseException:
        path.unlink(missing_ok=True)
        raise
    return path


# ---------------------------------------------------------------------------
# Remote source
# ---------------------------------------------------------------------------


class RemoteSource(BaseSource):
    """Serve Everest files from the latest stable release archive.

    Args:
        versions_url: Listing endpoint; defaults to VERSIONS_URL.
        branch: Release channel to pick from; defaults to STABLE_BRANCH.
        client: Optional httpx.Client (tests pass one with a MockTransport).
            When omitted, a client is created and closed here.
        on_status: Optional callback for progress messages.
    """

    def __init__(
        self,
        versions_url: Optional[str] = None,
        branch: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._archive_path: Optional[Path] = None
        self._zip: Optional[zipfile.ZipFile] = None
        self._apphosts_tmp: Optional[Path] = None

        owns_client = client is None
        if client is None:
            client = httpx.Client(timeout=http_timeout(), follow_redirects=True)
        try:
            if on_status:
                on_status("Looking up the latest stable Everest release...")
            release = fetch_latest_release(
                client, versions_url or VERSIONS_URL, branch or STABLE_BRANCH
            )
            self._release = release
            logger.info("Selected Everest %s (%s)", release.version, release.download_url)
            if on_status:
                on_status("Downloading Everest {}...".format(release.version))
            archive_path = download_to_tempfile(client, release.download_url)
        finally:
            if owns_client:
                client.close()

        try:
            self._zip = zipfile.ZipFile(archive_path, "r")
        except (zipfile.BadZipFile, OSError) as e:
            archive_path.unlink(missing_ok=True)
            raise CorruptArchiveError(
                "Could not open the Everest archive from {}".format(release.download_url)
            ) from e
        self._archive_path = archive_path

    @property
    def release_info(self) -> ReleaseInfo:
        return self._release

    @property
    def archive_path(self) -> Optional[Path]:
        return self._archive_path

    @property
    def name(self) -> str:
        return "remote: Everest {}".format(self._release.version)

    def _archive(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise RuntimeError("RemoteSource has already been released")
        return self._zip

    def _entry(self, logical_path: str) -> Optional[zipfile.ZipInfo]:
        try:
            return self._archive().getinfo(ARCHIVE_ROOT + logical_path)
        except KeyError:
            return None

    def _image(self, name: str, module_name: str, is_package: bool = False) -> Optional[ModuleImage]:
        entry = self._entry(module_logical_path(module_name))
        if entry is None:
            return None

        # Buffer fully; the loader needs the whole image
        zf = self._archive()
        source = zf.read(entry)
        bytecode_entry = self._entry(bytecode_logical_path(module_name))
        bytecode = zf.read(bytecode_entry) if bytecode_entry is not None else None
        return ModuleImage(
            name=name,
            source=source,
            origin="{}::{}".format(self._archive_path, entry.filename),
            bytecode=bytecode,
            is_package=is_package,
        )

    def _has_directory(self, logical_dir: str) -> bool:
        prefix = ARCHIVE_ROOT + logical_dir
        return any(n.startswith(prefix) for n in self._archive().namelist())

    def resolve_module(self, name: str) -> Optional[ModuleImage]:
        image = self._image(name, name)
        if image is not None:
            return image

        package_dir = package_logical_dir(name)
        if not self._has_directory(package_dir):
            return None
        image = self._image(name, name + ".__init__", is_package=True)
        if image is None:
            image = ModuleImage(
                name=name,
                source=b"",
                origin="{}::{}{}".format(self._archive_path, ARCHIVE_ROOT, package_dir),
                is_package=True,
            )
        return image

    def copy_file(self, logical_path: str, dest_dir: Path) -> Path:
        entry = self._entry(logical_path)
        if entry is None:
            raise SourceNotFoundError(logical_path)

        dest = Path(dest_dir) / logical_basename(logical_path)
        self._extract(entry, dest)
        return dest

    def copy_directory(self, logical_dir: str, dest_dir: Path) -> Path:
        logical_dir = logical_dir.strip("/")
        prefix = ARCHIVE_ROOT + logical_dir + "/"
        target = Path(dest_dir) / logical_basename(logical_dir)

        matched = 0
        for entry in self._archive().infolist():
            if not entry.filename.startswith(prefix) or entry.is_dir():
                continue
            rel = posixpath.normpath(entry.filename[len(prefix):])
            if rel.startswith("../") or posixpath.isabs(rel):
                raise CorruptArchiveError("Unsafe archive entry: {}".format(entry.filename))
            self._extract(entry, target.joinpath(*rel.split("/")))
            matched += 1

        if matched == 0:
            raise SourceNotFoundError(logical_dir)
        logger.debug("Extracted %d file(s) from %s to %s", matched, prefix, target)
        return target

    def _extract(self, entry: zipfile.ZipInfo, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self._archive().open(entry) as src, open(dest, "wb") as out:
            shutil.copyfileobj(src, out)

    def apphosts_path(self) -> Path:
        if self._apphosts_tmp is None:
            self._apphosts_tmp = Path(tempfile.mkdtemp(prefix="piton-apphosts-"))
            self.copy_directory(APPHOSTS_DIR, self._apphosts_tmp)
        return self._apphosts_tmp / APPHOSTS_DIR

    def _release_resources(self) -> None:
        zf, self._zip = self._zip, None
        archive_path, self._archive_path = self._archive_path, None
        apphosts_tmp, self._apphosts_tmp = self._apphosts_tmp, None

        if zf is not None:
            try:
                zf.close()
            except OSError:
                logger.warning("Failed to close the Everest archive")
        if archive_path is not None:
            try:
                archive_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to delete temp archive: %s", archive_path)
        if apphosts_tmp is not None:
            try:
                shutil.rmtree(apphosts_tmp)
            except OSError:
                logger.warning("Failed to delete temp apphost dir: %s", apphosts_tmp)
