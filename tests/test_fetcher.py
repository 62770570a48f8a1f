"""Tests for artifact download and placement."""
from __future__ import annotations

import io
import shutil
import tarfile
from collections.abc import Mapping
from pathlib import Path

import pytest

from jtctl.errors import FetchError
from jtctl.models import Component, ComponentLayout
from jtctl.providers.fetcher import ArtifactFetcher


def _layout(tmp_path: Path, component: Component = Component.JAVA) -> ComponentLayout:
    if component is Component.JAVA:
        return ComponentLayout(component, "openjdk", tmp_path / "opt", tmp_path / "jb", "jdk*")
    return ComponentLayout(
        component, "tomcat", tmp_path / "opt", tmp_path / "tb", "apache-tomcat-*"
    )


def _archive(path: Path, members: Mapping[str, str]) -> Path:
    with tarfile.open(path, "w:gz") as handle:
        for name, content in members.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            handle.addfile(info, io.BytesIO(data))
    return path


def _fetcher(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    archive: Path,
) -> ArtifactFetcher:
    fetcher = ArtifactFetcher(staging_dir=tmp_path / "staging", timeout=5)

    def fake_download(self: ArtifactFetcher, url: str, target: Path) -> None:
        shutil.copyfile(archive, target)

    monkeypatch.setattr(ArtifactFetcher, "_download", fake_download)
    return fetcher


def test_fetch_moves_top_level_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The single top-level directory of a JDK archive becomes the install."""
    archive = _archive(
        tmp_path / "jdk.tar.gz",
        {"jdk-21.0.2/bin/java": "#!/bin/sh\n", "jdk-21.0.2/release": "JAVA_VERSION=21\n"},
    )
    fetcher = _fetcher(tmp_path, monkeypatch, archive)
    destination = tmp_path / "opt" / "openjdk-21.0.2"

    result = fetcher.fetch(_layout(tmp_path), "21.0.2", "https://x.invalid/jdk.tar.gz", destination)

    assert result == destination
    assert (destination / "bin" / "java").exists()
    assert (destination / "release").read_text() == "JAVA_VERSION=21\n"
    assert list((tmp_path / "staging").iterdir()) == []


def test_fetch_handles_flat_archive(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Archives without a top-level directory are placed as-is."""
    archive = _archive(
        tmp_path / "flat.tar.gz",
        {"bin/catalina.sh": "#!/bin/sh\n", "conf/server.xml": "<Server/>\n"},
    )
    fetcher = _fetcher(tmp_path, monkeypatch, archive)
    destination = tmp_path / "opt" / "tomcat-10.1.34"

    fetcher.fetch(
        _layout(tmp_path, Component.APP_SERVER),
        "10.1.34",
        "https://x.invalid/tc.tar.gz",
        destination,
    )

    assert (destination / "bin" / "catalina.sh").exists()
    assert (destination / "conf" / "server.xml").exists()


def test_fetch_picks_matching_distribution(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Extra top-level entries are ignored when one directory matches the glob."""
    archive = _archive(
        tmp_path / "tc.tar.gz",
        {
            "apache-tomcat-10.1.34/bin/catalina.sh": "#!/bin/sh\n",
            "README.txt": "notes\n",
        },
    )
    fetcher = _fetcher(tmp_path, monkeypatch, archive)
    destination = tmp_path / "opt" / "tomcat-10.1.34"

    fetcher.fetch(
        _layout(tmp_path, Component.APP_SERVER),
        "10.1.34",
        "https://x.invalid/tc.tar.gz",
        destination,
    )

    assert (destination / "bin" / "catalina.sh").exists()
    assert not (destination / "README.txt").exists()


def test_fetch_rejects_several_distributions(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Ambiguous archives fail without creating the destination."""
    archive = _archive(
        tmp_path / "jdk.tar.gz",
        {"jdk-17/bin/java": "x", "jdk-21/bin/java": "y"},
    )
    fetcher = _fetcher(tmp_path, monkeypatch, archive)
    destination = tmp_path / "opt" / "openjdk-21"

    with pytest.raises(FetchError, match="several distributions"):
        fetcher.fetch(_layout(tmp_path), "21", "https://x.invalid/jdk.tar.gz", destination)

    assert not destination.exists()


def test_fetch_refuses_existing_destination(tmp_path: Path) -> None:
    """An existing destination is never overwritten."""
    destination = tmp_path / "opt" / "openjdk-21"
    destination.mkdir(parents=True)
    fetcher = ArtifactFetcher(staging_dir=tmp_path / "staging")

    with pytest.raises(FetchError, match="already exists"):
        fetcher.fetch(_layout(tmp_path), "21", "https://x.invalid/jdk.tar.gz", destination)


def test_fetch_propagates_download_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Download failures surface as FetchError and leave nothing behind."""
    fetcher = ArtifactFetcher(staging_dir=tmp_path / "staging")

    def failing_download(self: ArtifactFetcher, url: str, target: Path) -> None:
        raise FetchError(f"Download failed for {url}: HTTP 404")

    monkeypatch.setattr(ArtifactFetcher, "_download", failing_download)
    destination = tmp_path / "opt" / "openjdk-21"

    with pytest.raises(FetchError, match="HTTP 404"):
        fetcher.fetch(_layout(tmp_path), "21", "https://x.invalid/missing.tar.gz", destination)

    assert not destination.exists()
    assert list((tmp_path / "staging").iterdir()) == []


def test_fetch_rejects_corrupt_archive(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A payload that is not a tarball is reported as an extraction failure."""
    bogus = tmp_path / "bogus.tar.gz"
    bogus.write_text("<html>not found</html>")
    fetcher = _fetcher(tmp_path, monkeypatch, bogus)

    with pytest.raises(FetchError, match="Failed to extract"):
        fetcher.fetch(
            _layout(tmp_path), "21", "https://x.invalid/jdk.tar.gz", tmp_path / "opt" / "openjdk-21"
        )
