"""
Downloads and installs a Stockfish release for the current platform.

This runs outside the server's request path (`main.py install-engine`). Each
candidate release URL is tried in turn; a single URL gets a bounded number of
download attempts. The first archive that yields a recognisable binary wins.
"""

import asyncio
import hashlib
import os
import platform
import re
import shutil
import stat
import sys
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple, TYPE_CHECKING

import requests
import structlog

from chessmaster.exceptions import EngineDownloadError
from chessmaster.utils.retry import retry_with_backoff

if TYPE_CHECKING:
    from chessmaster.config.settings import DownloadSettings

logger = structlog.get_logger(__name__)

_GITHUB = "https://github.com/official-stockfish/Stockfish/releases/download"
_MIRROR = "https://stockfishchess.org/files"
_USER_AGENT = "chessmaster-engine-installer/1.0"


@dataclass(frozen=True)
class ReleaseSpec:
    urls: Tuple[str, ...]
    binary_pattern: Pattern[str]
    target_name: str


RELEASES: Dict[Tuple[str, str], ReleaseSpec] = {
    ("win32", "x64"): ReleaseSpec(
        urls=(
            f"{_GITHUB}/sf_17.1/stockfish-windows-x86-64-avx2.zip",
            f"{_GITHUB}/sf_17/stockfish-windows-x86-64-avx2.zip",
            f"{_GITHUB}/sf_16.1/stockfish-16.1-win-x86-64.zip",
            f"{_MIRROR}/stockfish-17.1-win-x64-avx2.zip",
        ),
        binary_pattern=re.compile(r"stockfish/+stockfish-windows-(x86-64|x64).*\.exe$", re.I),
        target_name="stockfish.exe",
    ),
    ("win32", "ia32"): ReleaseSpec(
        urls=(
            f"{_GITHUB}/sf_16.1/stockfish-16.1-win-x86.zip",
            f"{_MIRROR}/stockfish-16.1-win-x86.zip",
        ),
        binary_pattern=re.compile(r"stockfish/+stockfish-windows-x86.*\.exe$", re.I),
        target_name="stockfish.exe",
    ),
    ("darwin", "x64"): ReleaseSpec(
        urls=(
            f"{_GITHUB}/sf_16.1/stockfish-16.1-mac-x86-64.zip",
            f"{_MIRROR}/stockfish-16.1-mac-x86-64.zip",
        ),
        binary_pattern=re.compile(r"stockfish/+stockfish-apple-macOS-intel$"),
        target_name="stockfish",
    ),
    ("darwin", "arm64"): ReleaseSpec(
        urls=(
            f"{_GITHUB}/sf_16.1/stockfish-16.1-mac-arm64.zip",
            f"{_MIRROR}/stockfish-16.1-mac-arm64.zip",
        ),
        binary_pattern=re.compile(r"stockfish/+stockfish-apple-macOS-arm64$"),
        target_name="stockfish",
    ),
    ("linux", "x64"): ReleaseSpec(
        urls=(
            f"{_GITHUB}/sf_17.1/stockfish-ubuntu-x86-64.tar",
            f"{_GITHUB}/sf_17/stockfish-ubuntu-x86-64.tar",
            f"{_MIRROR}/stockfish-ubuntu-x86-64.tar",
        ),
        binary_pattern=re.compile(r"stockfish/.*(linux|ubuntu).*x86[-_]?64(/+stockfish)?$", re.I),
        target_name="stockfish",
    ),
    ("linux", "arm64"): ReleaseSpec(
        urls=(
            f"{_GITHUB}/sf_17.1/stockfish-ubuntu-arm64.tar",
            f"{_GITHUB}/sf_17/stockfish-ubuntu-arm64.tar",
            f"{_MIRROR}/stockfish-ubuntu-arm64.tar",
        ),
        binary_pattern=re.compile(r"stockfish/.*(linux|ubuntu).*arm(v?8)?(/+stockfish)?$", re.I),
        target_name="stockfish",
    ),
}

_ARCH_ALIASES = {
    "x86_64": "x64", "amd64": "x64",
    "arm64": "arm64", "aarch64": "arm64",
    "x86": "ia32", "i386": "ia32", "i686": "ia32",
}


def is_retryable_download(error: BaseException) -> bool:
    """Client errors other than 408/429 mean the URL is wrong; move on to the next one."""
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        return True
    return not (400 <= status < 500) or status in (408, 429)


def current_platform() -> Tuple[str, str]:
    """Returns the `(platform, arch)` key used in `RELEASES`."""
    system = "linux" if sys.platform.startswith("linux") else sys.platform
    arch = _ARCH_ALIASES.get(platform.machine().lower(), platform.machine().lower())
    return system, arch


def find_binary(root: Path, spec: ReleaseSpec) -> Optional[Path]:
    """Locates the engine inside an extracted archive, by pattern then by name."""
    files = sorted(p for p in root.rglob("*") if p.is_file())
    for path in files:
        if spec.binary_pattern.search(path.relative_to(root).as_posix()):
            return path
    for path in files:
        if path.name.lower() == spec.target_name.lower():
            return path
    return None


def extract_archive(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()
    if name.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)
    elif re.search(r"\.tar(\.(gz|xz|bz2))?$", name):
        with tarfile.open(archive) as tf:
            tf.extractall(dest, filter="data")
    else:
        raise EngineDownloadError(f"Unsupported archive format for {archive.name}")


class EngineInstaller:
    """Fetches a platform-appropriate engine build into `install_dir`."""

    def __init__(self, settings: "DownloadSettings", session: Optional[requests.Session] = None):
        self._settings = settings
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", _USER_AGENT)

    def _fetch_sync(self, url: str, dest: Path) -> str:
        """Streams `url` into `dest` and returns its sha256."""
        digest = hashlib.sha256()
        with self._session.get(url, stream=True, timeout=self._settings.timeout_s) as response:
            response.raise_for_status()
            content_type = response.headers.get("content-type", "")
            if "text/html" in content_type:
                raise EngineDownloadError(f"Unexpected content-type {content_type}")
            with dest.open("wb") as fh:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    digest.update(chunk)
                    fh.write(chunk)
        return digest.hexdigest()

    async def _download(self, url: str, dest: Path) -> str:
        fetch = retry_with_backoff(
            attempts=self._settings.attempts,
            exceptions_to_catch=(requests.RequestException,),
            retry_if=is_retryable_download,
            target="download",
        )(self._fetch_async)
        return await fetch(url, dest)

    async def _fetch_async(self, url: str, dest: Path) -> str:
        logger.info("Downloading engine archive.", url=url)
        return await asyncio.to_thread(self._fetch_sync, url, dest)

    async def install(self, key: Optional[Tuple[str, str]] = None) -> Path:
        """
        Downloads, unpacks and installs the engine.

        Returns:
            The path of the installed executable.

        Raises:
            EngineDownloadError: If the platform is unsupported or every
                candidate URL failed.
        """
        key = key or current_platform()
        spec = RELEASES.get(key)
        if spec is None:
            raise EngineDownloadError(f"No Stockfish build configured for platform={key[0]} arch={key[1]}.")

        install_dir = Path(self._settings.install_dir)
        install_dir.mkdir(parents=True, exist_ok=True)
        failures: List[str] = []

        with tempfile.TemporaryDirectory(prefix="stockfish-download-") as tmp:
            tmp_root = Path(tmp)
            for index, url in enumerate(spec.urls):
                archive = tmp_root / f"archive-{index}-{url.rsplit('/', 1)[-1]}"
                extract_dir = tmp_root / f"extract-{index}"
                try:
                    sha256 = await self._download(url, archive)
                    logger.info("Downloaded engine archive.", url=url, sha256=sha256)
                    await asyncio.to_thread(extract_archive, archive, extract_dir)
                    binary = find_binary(extract_dir, spec)
                    if binary is None:
                        raise EngineDownloadError("Expected Stockfish binary not found in extracted archive.")
                except (requests.RequestException, EngineDownloadError, OSError, zipfile.BadZipFile, tarfile.TarError) as e:
                    failures.append(f"{url}: {e}")
                    logger.warning("Engine archive attempt failed.", url=url, error=str(e))
                    shutil.rmtree(extract_dir, ignore_errors=True)
                    continue

                target = install_dir / spec.target_name
                shutil.copyfile(binary, target)
                if os.name != "nt":
                    target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                logger.info("Engine installed.", path=str(target))
                return target

        raise EngineDownloadError("Unable to download Stockfish binary. Tried:\n - " + "\n - ".join(failures))
