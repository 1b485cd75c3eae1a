"""
Runtime installer - detect, download, verify and install the daemon.

Downloads the platform-specific release artifact with requests, verifies it
in memory (size bounds, Content-Length, file signature) and only then writes
and unpacks or runs it. A truncated or corrupted artifact is rejected before
anything executes.
"""

import io
import logging
import os
import platform
import shutil
import subprocess
import sys
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

import requests

from ..core.config import RuntimeConfig, default_data_dir
from ..core.exceptions import CorruptedDownload, InstallationError
from ..utils.retry import RetryConfig, retry_with_backoff


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallerArtifact:
    """Where to fetch a platform's installer and how to recognise it."""
    platform: str
    url: str
    filename: str
    signature: bytes
    kind: str  # "exe", "zip" or "tgz"


ARTIFACTS: Dict[str, InstallerArtifact] = {
    "windows": InstallerArtifact(
        platform="windows",
        url="https://ollama.com/download/OllamaSetup.exe",
        filename="OllamaSetup.exe",
        signature=b"MZ",
        kind="exe",
    ),
    "darwin": InstallerArtifact(
        platform="darwin",
        url="https://ollama.com/download/Ollama-darwin.zip",
        filename="Ollama-darwin.zip",
        signature=b"PK\x03\x04",
        kind="zip",
    ),
    "linux": InstallerArtifact(
        platform="linux",
        url="https://ollama.com/download/ollama-linux-{arch}.tgz",
        filename="ollama-linux-{arch}.tgz",
        signature=b"\x1f\x8b",
        kind="tgz",
    ),
}

_LINUX_ARCH = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}


def current_platform() -> str:
    """Normalised platform name: windows, darwin or linux (or the raw name)."""
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def artifact_for(platform_name: Optional[str] = None) -> InstallerArtifact:
    """
    Get the installer artifact for a platform.

    Raises:
        InstallationError: If the platform is unsupported
    """
    name = platform_name or current_platform()
    artifact = ARTIFACTS.get(name)
    if artifact is None:
        raise InstallationError(f"Unsupported platform: {name}")
    if name == "linux":
        arch = _LINUX_ARCH.get(platform.machine().lower())
        if arch is None:
            raise InstallationError(f"Unsupported architecture: {platform.machine()}")
        artifact = InstallerArtifact(
            platform=name,
            url=artifact.url.format(arch=arch),
            filename=artifact.filename.format(arch=arch),
            signature=artifact.signature,
            kind=artifact.kind,
        )
    return artifact


def verify_installer_artifact(
    data: bytes,
    artifact: InstallerArtifact,
    expected_length: Optional[int] = None,
    min_bytes: int = 1024 * 1024,
    max_bytes: int = 500 * 1024 * 1024,
) -> None:
    """
    Verify a downloaded installer before it is written or executed.

    Checks, in order: minimum plausible size, maximum size, agreement with
    the server's Content-Length, and the artifact's file signature.

    Raises:
        CorruptedDownload: If any check fails
    """
    size = len(data)
    if size < min_bytes:
        raise CorruptedDownload(
            f"Downloaded installer appears corrupted (too small: {size} bytes, "
            f"expected at least {min_bytes} bytes)",
            size=size,
            expected_size=expected_length,
        )

    if size > max_bytes:
        raise CorruptedDownload(
            f"Downloaded installer appears corrupted (too large: {size} bytes, "
            f"expected at most {max_bytes} bytes)",
            size=size,
            expected_size=expected_length,
        )

    if expected_length is not None and size != expected_length:
        raise CorruptedDownload(
            f"Downloaded installer size mismatch: got {size} bytes, expected {expected_length} bytes",
            size=size,
            expected_size=expected_length,
        )

    if not data.startswith(artifact.signature):
        raise CorruptedDownload(
            f"Downloaded file does not look like a {artifact.kind} installer for {artifact.platform}",
            size=size,
            expected_size=expected_length,
        )

    logger.info("Installer integrity verification passed")


class RuntimeInstaller:
    """
    Detects and installs the inference daemon.

    Example:
        >>> installer = RuntimeInstaller(RuntimeConfig())
        >>> if installer.detect() is None:
        ...     executable = installer.install()
    """

    def __init__(
        self,
        config: RuntimeConfig,
        install_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
        platform_name: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the installer.

        Args:
            config: Runtime configuration (executable, size bounds, attempts)
            install_dir: Where unpacked binaries go (defaults under the data dir)
            session: requests session used for downloads
            platform_name: Override for the detected platform
            sleep: Sleep used between download attempts (injectable for tests)
        """
        self.config = config
        self.install_dir = Path(install_dir) if install_dir else default_data_dir() / "runtime"
        self.session = session or requests.Session()
        self.platform_name = platform_name or current_platform()
        self._sleep = sleep

    def detect(self) -> Optional[str]:
        """
        Find an installed daemon executable.

        Looks at the configured executable (name on PATH or explicit path),
        then at binaries previously unpacked into install_dir.

        Returns:
            Path to the executable, or None if not installed
        """
        configured = self.config.executable
        found = shutil.which(configured)
        if found:
            return found
        if os.path.isfile(configured) and os.access(configured, os.X_OK):
            return configured

        for candidate in (
            self.install_dir / "bin" / "ollama",
            self.install_dir / "ollama",
            self.install_dir / "Ollama.app" / "Contents" / "Resources" / "ollama",
        ):
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return None

    def download(self, artifact: InstallerArtifact) -> bytes:
        """
        Download and verify an installer artifact, retrying failed attempts.

        Returns:
            The verified artifact bytes

        Raises:
            CorruptedDownload: If the last attempt produced a corrupted artifact
            InstallationError: If the download itself kept failing
        """
        retry_config = RetryConfig(
            max_attempts=self.config.installer_download_attempts,
            initial_delay_ms=2000.0,
            max_delay_ms=2000.0,
            backoff_multiplier=1.0,
            jitter=False,
        )
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        result = retry_with_backoff(
            lambda: self._download_once(artifact),
            retry_config,
            retry_on=(CorruptedDownload, requests.RequestException),
            operation_name=f"download {artifact.filename}",
            **kwargs,
        )
        if result.success:
            return result.result
        if isinstance(result.error, InstallationError):
            raise result.error
        raise InstallationError(f"Failed to download installer from {artifact.url}: {result.error}")

    def _download_once(self, artifact: InstallerArtifact) -> bytes:
        logger.info(f"Downloading runtime installer from: {artifact.url}")
        response = self.session.get(artifact.url, stream=True, timeout=60)
        try:
            if response.status_code != 200:
                raise requests.HTTPError(f"HTTP {response.status_code} from {artifact.url}")

            content_length = response.headers.get("Content-Length")
            expected = int(content_length) if content_length and content_length.isdigit() else None

            buffer = io.BytesIO()
            for block in response.iter_content(chunk_size=1024 * 1024):
                if block:
                    buffer.write(block)
                    if buffer.tell() > self.config.installer_max_bytes:
                        break
        finally:
            response.close()

        data = buffer.getvalue()
        verify_installer_artifact(
            data,
            artifact,
            expected_length=expected,
            min_bytes=self.config.installer_min_bytes,
            max_bytes=self.config.installer_max_bytes,
        )
        logger.info(f"Installer downloaded and verified successfully ({len(data)} bytes)")
        return data

    def install(self) -> str:
        """
        Download, verify and install the daemon for this platform.

        Returns:
            Path to the installed executable

        Raises:
            CorruptedDownload: If the artifact failed verification (nothing ran)
            InstallationError: If download, unpacking or the installer failed
        """
        artifact = artifact_for(self.platform_name)
        logger.info(f"Installing runtime for platform: {artifact.platform}")
        data = self.download(artifact)
        executable = self._install_artifact(artifact, data)
        logger.info(f"Runtime installed at {executable}")
        return executable

    def _install_artifact(self, artifact: InstallerArtifact, data: bytes) -> str:
        self.install_dir.mkdir(parents=True, exist_ok=True)

        if artifact.kind == "tgz":
            try:
                with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
                    archive.extractall(self.install_dir, filter="data")
            except (tarfile.TarError, OSError) as e:
                raise InstallationError(f"Failed to unpack {artifact.filename}: {e}")
        elif artifact.kind == "zip":
            try:
                with zipfile.ZipFile(io.BytesIO(data)) as archive:
                    self._extract_zip(archive)
            except (zipfile.BadZipFile, OSError) as e:
                raise InstallationError(f"Failed to unpack {artifact.filename}: {e}")
        else:
            self._run_windows_installer(artifact, data)

        executable = self.detect()
        if executable is None:
            raise InstallationError("Installer finished but no runtime executable was found")
        return executable

    def _extract_zip(self, archive: zipfile.ZipFile) -> None:
        # extractall drops Unix permission bits
        for info in archive.infolist():
            target = archive.extract(info, self.install_dir)
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                os.chmod(target, mode)

    def _run_windows_installer(self, artifact: InstallerArtifact, data: bytes) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            installer_path = Path(tmp) / artifact.filename
            installer_path.write_bytes(data)
            logger.info("Running runtime installer")
            try:
                completed = subprocess.run(
                    [str(installer_path), "/S"],
                    capture_output=True,
                    timeout=600,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise InstallationError(f"Failed to run installer: {e}")
            if completed.returncode != 0:
                stderr = completed.stderr.decode("utf-8", errors="replace")
                raise InstallationError(f"Runtime installation failed: {stderr}")
