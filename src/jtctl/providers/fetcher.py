"""Download and unpack versioned distribution archives."""
from __future__ import annotations

import logging
import os
import shutil
import ssl
import tarfile
import tempfile
import urllib.error
import urllib.request
from pathlib import Path

import certifi

from ..errors import FetchError
from ..models import ComponentLayout

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def _ssl_context() -> ssl.SSLContext:
    candidates: list[str] = []

    env_override = os.environ.get("SSL_CERT_FILE")
    if env_override:
        candidates.append(env_override)

    candidates.append(certifi.where())

    for candidate in candidates:
        path = Path(candidate)
        if path.is_file():
            return ssl.create_default_context(cafile=str(path))

    return ssl.create_default_context()


class ArtifactFetcher:
    """Fetch a ``.tar.gz`` distribution and place its content at a target path."""

    def __init__(self, *, staging_dir: Path, timeout: float = 300.0) -> None:
        """Configure where archives are staged and the network timeout."""
        self.staging_dir = staging_dir.expanduser()
        self.timeout = timeout

    def fetch(self, layout: ComponentLayout, version: str, url: str, destination: Path) -> Path:
        """Download *url*, extract it and move the distribution to *destination*."""
        if destination.exists():
            raise FetchError(f"Install destination already exists: {destination}")
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            workdir = Path(
                tempfile.mkdtemp(
                    prefix=f"jtctl-{layout.dir_name(version)}-",
                    dir=str(self.staging_dir),
                )
            )
        except OSError as exc:
            raise FetchError(f"Cannot prepare staging directory {self.staging_dir}: {exc}") from exc

        try:
            archive = workdir / "artifact.tar.gz"
            LOGGER.info("Downloading %s %s from %s", layout.component.label, version, url)
            self._download(url, archive)
            extract_dir = workdir / "extract"
            self._extract(archive, extract_dir)
            source = _resolve_distribution_root(extract_dir, layout.extracted_glob)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(destination))
        except FetchError:
            raise
        except (OSError, shutil.Error) as exc:
            raise FetchError(
                f"Failed to place {layout.component.label} {version} at {destination}: {exc}"
            ) from exc
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
        return destination

    def _download(self, url: str, target: Path) -> None:
        """Stream *url* into *target* (isolated for testing)."""
        request = urllib.request.Request(url, headers={"User-Agent": "jtctl"})
        context = _ssl_context() if url.lower().startswith("https:") else None
        try:
            with urllib.request.urlopen(  # noqa: S310 - URL comes from the descriptor
                request, timeout=self.timeout, context=context
            ) as response, target.open("wb") as handle:
                shutil.copyfileobj(response, handle, _CHUNK_SIZE)
        except urllib.error.HTTPError as exc:
            raise FetchError(f"Download failed for {url}: HTTP {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise FetchError(f"Download failed for {url}: {exc.reason}") from exc
        except (OSError, ValueError) as exc:
            raise FetchError(f"Download failed for {url}: {exc}") from exc

    def _extract(self, archive: Path, extract_dir: Path) -> None:
        """Unpack *archive* into *extract_dir* refusing unsafe members."""
        extract_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive, "r:*") as handle:
                handle.extractall(extract_dir, filter="data")
        except (tarfile.TarError, OSError) as exc:
            raise FetchError(f"Failed to extract {archive.name}: {exc}") from exc


def _resolve_distribution_root(extract_dir: Path, extracted_glob: str) -> Path:
    """Return the directory holding the distribution inside *extract_dir*."""
    entries = [path for path in extract_dir.iterdir() if not path.name.startswith(".")]
    if not entries:
        raise FetchError("Archive is empty.")
    directories = [path for path in entries if path.is_dir()]
    if len(entries) == 1 and directories:
        return directories[0]
    matches = sorted(path for path in directories if path.match(extracted_glob))
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        names = ", ".join(path.name for path in matches)
        raise FetchError(f"Archive contains several distributions: {names}.")
    # Flat archive without a top-level directory.
    return extract_dir


__all__ = ["ArtifactFetcher", "FetchError"]
