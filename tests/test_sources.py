"""Tests for the local and remote Everest sources.

WHY: Every later install step reads through a source. If the two
variants disagree on a path, a missing file, or cleanup, the install
either breaks on one of them or leaks multi-megabyte temp files.

HOW: Tests are organized by class:
  - TestReleaseSelection: listing validation and stable-release choice
  - TestLocalSource: lookups and copies against a directory tree
  - TestRemoteSource: the same operations against a mocked release
  - TestRemoteFailures: every construction failure cleans up after itself
  - TestOpenSource: the factory and its hook registration

RULES:
- HTTP goes through httpx.MockTransport; nothing touches the network
- tempfile is redirected per test so leftovers can be counted
"""

from __future__ import annotations

import sys

import httpx
import pytest

from vanilla_coreifier.sources import (
    CorruptArchiveError,
    DownloadFailedError,
    LocalSource,
    MalformedListingError,
    NoStableReleaseError,
    RemoteSource,
    RemoteSourceError,
    SourceNotFoundError,
    open_source,
)
from vanilla_coreifier.sources.models import ReleaseInfo
from vanilla_coreifier.sources.remote import parse_release_listing, select_stable_release

# Must match the routes built in conftest.py
VERSIONS_URL = "https://versions.test/everest-versions"
DOWNLOAD_URL = "https://downloads.test/everest-main.zip"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _remote(mock_client, routes, archive=None) -> RemoteSource:
    routes = dict(routes)
    if archive is not None:
        routes[DOWNLOAD_URL] = archive
    return RemoteSource(versions_url=VERSIONS_URL, client=mock_client(routes))


def _files_under(root):
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in root.rglob("*") if p.is_file()
    }


# ---------------------------------------------------------------------------
# TestReleaseSelection
# ---------------------------------------------------------------------------


class TestReleaseSelection:
    """The highest stable version wins; other branches are ignored."""

    def test_picks_highest_stable(self):
        releases = [
            ReleaseInfo("stable", 1, "a"),
            ReleaseInfo("beta", 5, "b"),
            ReleaseInfo("stable", 3, "c"),
        ]
        assert select_stable_release(releases).version == 3

    def test_first_listed_wins_on_tie(self):
        releases = [ReleaseInfo("stable", 3, "first"), ReleaseInfo("stable", 3, "second")]
        assert select_stable_release(releases).download_url == "first"

    def test_other_branch_name(self):
        releases = [ReleaseInfo("stable", 3, "s"), ReleaseInfo("beta", 5, "b")]
        assert select_stable_release(releases, branch="beta").download_url == "b"

    def test_no_stable_release(self):
        with pytest.raises(NoStableReleaseError):
            select_stable_release([ReleaseInfo("beta", 5, "b")])

    def test_listing_parses(self, release_listing):
        releases = parse_release_listing(release_listing)
        assert [r.branch for r in releases] == ["stable", "beta", "stable", "dev"]
        assert releases[2].download_url == DOWNLOAD_URL

    def test_listing_missing_field_is_malformed(self):
        with pytest.raises(MalformedListingError):
            parse_release_listing([{"branch": "stable", "version": 1}])

    def test_listing_wrong_type_is_malformed(self):
        with pytest.raises(MalformedListingError):
            parse_release_listing({"branch": "stable"})


# ---------------------------------------------------------------------------
# TestLocalSource
# ---------------------------------------------------------------------------


class TestLocalSource:
    """LocalSource reads straight from a directory tree."""

    def test_name(self, everest_tree):
        assert LocalSource(everest_tree).name == "local: {}".format(everest_tree.resolve())

    def test_resolve_module(self, everest_tree):
        image = LocalSource(everest_tree).resolve_module("vc_helper")
        assert image is not None
        assert b"def mark" in image.source
        assert image.bytecode is None
        assert image.origin == str(everest_tree.resolve() / "vc_helper.py")

    def test_resolve_absent_module_returns_none(self, everest_tree):
        assert LocalSource(everest_tree).resolve_module("does_not_exist") is None

    def test_resolve_picks_up_bytecode(self, everest_tree):
        (everest_tree / "vc_helper.pyc").write_bytes(b"compiled")
        image = LocalSource(everest_tree).resolve_module("vc_helper")
        assert image.bytecode == b"compiled"

    def test_resolve_folder_as_package(self, everest_tree):
        image = LocalSource(everest_tree).resolve_module("docs")
        assert image.is_package
        assert image.source == b""
        assert LocalSource(everest_tree).resolve_module("docs.nested").is_package

    def test_resolve_package_init(self, everest_tree):
        (everest_tree / "docs" / "__init__.py").write_text("NAME = 'docs'\n")
        image = LocalSource(everest_tree).resolve_module("docs")
        assert image.is_package
        assert image.source == b"NAME = 'docs'\n"
        assert image.origin == str(everest_tree.resolve() / "docs" / "__init__.py")

    def test_copy_file(self, everest_tree, tmp_path):
        dest_dir = tmp_path / "game"
        dest_dir.mkdir()
        dest = LocalSource(everest_tree).copy_file("everest-lib/FNA.pdb", dest_dir)
        assert dest == dest_dir / "FNA.pdb"
        assert dest.read_bytes() == b"fna-symbols"

    def test_copy_file_overwrites(self, everest_tree, tmp_path):
        (tmp_path / "FNA.pdb").write_bytes(b"old")
        LocalSource(everest_tree).copy_file("everest-lib/FNA.pdb", tmp_path)
        assert (tmp_path / "FNA.pdb").read_bytes() == b"fna-symbols"

    def test_copy_missing_file_raises(self, everest_tree, tmp_path):
        with pytest.raises(SourceNotFoundError) as excinfo:
            LocalSource(everest_tree).copy_file("everest-lib/nope.dll", tmp_path)
        assert excinfo.value.logical_path == "everest-lib/nope.dll"

    def test_copy_directory_mirrors_subtree(self, everest_tree, everest_files, tmp_path):
        dest_dir = tmp_path / "game"
        dest_dir.mkdir()
        target = LocalSource(everest_tree).copy_directory("everest-lib", dest_dir)

        assert target == dest_dir / "everest-lib"
        expected = {
            k[len("everest-lib/"):]: v
            for k, v in everest_files.items() if k.startswith("everest-lib/")
        }
        assert _files_under(target) == expected

    def test_copy_missing_directory_raises(self, everest_tree, tmp_path):
        with pytest.raises(SourceNotFoundError):
            LocalSource(everest_tree).copy_directory("not-there", tmp_path)

    def test_apphosts_path(self, everest_tree):
        path = LocalSource(everest_tree).apphosts_path()
        assert (path / "linux").read_bytes() == b"linux-template"

    def test_release_is_idempotent(self, everest_tree):
        source = LocalSource(everest_tree)
        source.release()
        source.release()


# ---------------------------------------------------------------------------
# TestRemoteSource
# ---------------------------------------------------------------------------


class TestRemoteSource:
    """RemoteSource serves the newest stable release archive."""

    def test_selects_newest_stable_release(self, mock_client, remote_routes, temp_root):
        with _remote(mock_client, remote_routes) as source:
            assert source.release_info.version == 4500
            assert source.name == "remote: Everest 4500"

    def test_resolve_module(self, mock_client, remote_routes, temp_root):
        with _remote(mock_client, remote_routes) as source:
            image = source.resolve_module("vc_helper")
            assert image is not None
            assert b"def mark" in image.source
            assert image.origin.endswith("::main/vc_helper.py")
            assert source.resolve_module("does_not_exist") is None

    def test_resolve_module_with_bytecode(self, mock_client, remote_routes, everest_files,
                                          archive_builder, temp_root):
        files = dict(everest_files)
        files["vc_helper.pyc"] = b"compiled"
        with _remote(mock_client, remote_routes, archive_builder(files)) as source:
            assert source.resolve_module("vc_helper").bytecode == b"compiled"

    def test_resolve_folder_as_package(self, mock_client, remote_routes, temp_root):
        with _remote(mock_client, remote_routes) as source:
            image = source.resolve_module("docs.nested")
            assert image.is_package
            assert image.source == b""
            assert image.origin.endswith("::main/docs/nested/")

    def test_any_2xx_counts_as_success(self, mock_client, release_listing, everest_archive, temp_root):
        routes = {
            VERSIONS_URL: httpx.Response(203, json=release_listing),
            DOWNLOAD_URL: httpx.Response(203, content=everest_archive),
        }
        with _remote(mock_client, routes) as source:
            assert source.release_info.version == 4500
            assert source.resolve_module("vc_helper") is not None

    def test_copy_file(self, mock_client, remote_routes, temp_root, tmp_path):
        with _remote(mock_client, remote_routes) as source:
            dest = source.copy_file("everest-lib/piton-runtime.yaml", tmp_path)
        assert dest.read_bytes() == b"runtime: piton\n"

    def test_copy_missing_file_raises(self, mock_client, remote_routes, temp_root, tmp_path):
        with _remote(mock_client, remote_routes) as source:
            with pytest.raises(SourceNotFoundError):
                source.copy_file("everest-lib/nope.dll", tmp_path)

    def test_copy_directory_matches_local(self, mock_client, remote_routes, everest_tree,
                                          temp_root, tmp_path):
        local_dest = tmp_path / "local"
        remote_dest = tmp_path / "remote"
        local_dest.mkdir()
        remote_dest.mkdir()

        LocalSource(everest_tree).copy_directory("everest-lib", local_dest)
        with _remote(mock_client, remote_routes) as source:
            source.copy_directory("everest-lib", remote_dest)

        assert _files_under(remote_dest) == _files_under(local_dest)

    def test_directory_match_ignores_sibling_prefix(self, mock_client, remote_routes, everest_files,
                                                     archive_builder, temp_root, tmp_path):
        files = dict(everest_files)
        files["everest-lib-old/stale.dll"] = b"stale"
        with _remote(mock_client, remote_routes, archive_builder(files)) as source:
            target = source.copy_directory("everest-lib", tmp_path)
        assert not (target / "stale.dll").exists()
        assert not (tmp_path / "everest-lib-old").exists()

    def test_unsafe_entry_is_rejected(self, mock_client, remote_routes, everest_files,
                                      archive_builder, temp_root, tmp_path):
        files = dict(everest_files)
        files["everest-lib/../../escape.txt"] = b"escape"
        with _remote(mock_client, remote_routes, archive_builder(files)) as source:
            with pytest.raises(CorruptArchiveError):
                source.copy_directory("everest-lib", tmp_path / "out")
        assert not (tmp_path / "escape.txt").exists()

    def test_apphosts_extracted_and_removed_on_release(self, mock_client, remote_routes, temp_root):
        source = _remote(mock_client, remote_routes)
        hosts = source.apphosts_path()
        assert (hosts / "osx").read_bytes() == b"osx-template"
        assert source.apphosts_path() == hosts

        source.release()
        assert not hosts.exists()
        assert list(temp_root.iterdir()) == []

    def test_release_deletes_archive_and_is_idempotent(self, mock_client, remote_routes, temp_root):
        source = _remote(mock_client, remote_routes)
        archive = source.archive_path
        assert archive is not None and archive.exists()

        source.release()
        source.release()
        assert not archive.exists()
        assert list(temp_root.iterdir()) == []


# ---------------------------------------------------------------------------
# TestRemoteFailures
# ---------------------------------------------------------------------------


class TestRemoteFailures:
    """Construction failures raise typed errors and leave no temp files."""

    def test_listing_http_error(self, mock_client, temp_root):
        with pytest.raises(DownloadFailedError) as excinfo:
            _remote(mock_client, {VERSIONS_URL: httpx.Response(503)})
        assert excinfo.value.url == VERSIONS_URL
        assert list(temp_root.iterdir()) == []

    def test_listing_transport_error(self, mock_client, temp_root):
        with pytest.raises(DownloadFailedError):
            _remote(mock_client, {VERSIONS_URL: httpx.ConnectError("offline")})

    def test_listing_not_json(self, mock_client, temp_root):
        with pytest.raises(MalformedListingError):
            _remote(mock_client, {VERSIONS_URL: httpx.Response(200, content=b"<html>")})

    def test_no_stable_release(self, mock_client, temp_root):
        listing = [{"branch": "beta", "version": 5, "mainDownload": DOWNLOAD_URL}]
        with pytest.raises(NoStableReleaseError):
            _remote(mock_client, {VERSIONS_URL: listing})
        assert list(temp_root.iterdir()) == []

    def test_download_http_error(self, mock_client, remote_routes, temp_root):
        with pytest.raises(DownloadFailedError) as excinfo:
            _remote(mock_client, remote_routes, httpx.Response(404))
        assert excinfo.value.url == DOWNLOAD_URL
        assert list(temp_root.iterdir()) == []

    def test_corrupt_archive(self, mock_client, remote_routes, temp_root):
        with pytest.raises(CorruptArchiveError):
            _remote(mock_client, remote_routes, b"not a zip file")
        assert list(temp_root.iterdir()) == []

    def test_all_failures_share_a_base(self):
        for exc in (NoStableReleaseError, DownloadFailedError, MalformedListingError,
                    CorruptArchiveError):
            assert issubclass(exc, RemoteSourceError)


# ---------------------------------------------------------------------------
# TestOpenSource
# ---------------------------------------------------------------------------


class TestOpenSource:
    """open_source() picks the variant and registers the import hook."""

    def test_local_source_with_hook(self, everest_tree):
        source = open_source(local_root=everest_tree)
        try:
            assert isinstance(source, LocalSource)
            assert source._hook in sys.meta_path
            assert sys.meta_path[-1] is source._hook
        finally:
            source.release()
        assert all(getattr(f, "_source", None) is not source for f in sys.meta_path)

    def test_install_hook_is_idempotent(self, everest_tree):
        with open_source(local_root=everest_tree) as source:
            hook = source.install_hook()
            assert sum(1 for f in sys.meta_path if f is hook) == 1

    def test_remote_source(self, monkeypatch, mock_client, remote_routes, temp_root):
        client = mock_client(remote_routes)
        monkeypatch.setattr("vanilla_coreifier.sources.remote.VERSIONS_URL", VERSIONS_URL)
        monkeypatch.setattr(
            "vanilla_coreifier.sources.remote.httpx.Client",
            lambda **kwargs: client,
        )

        with open_source(remote=True, local_root="ignored") as source:
            assert isinstance(source, RemoteSource)
            assert source.release_info.version == 4500
        assert list(temp_root.iterdir()) == []
