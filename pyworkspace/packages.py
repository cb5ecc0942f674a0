"""Package management for the workspace interpreter.

Distributions are installed by a host-side installer (uv when available, pip
otherwise) into the mount's site-packages directory, which the guest driver
places first on sys.path. Queries about what is installed run inside the
interpreter through importlib.metadata so they reflect exactly what guest code
can import. Index lookups use the PyPI JSON API over aiohttp.

Install and uninstall never raise: failures are reported as False and logged.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from pathlib import Path
from urllib.parse import quote

import aiohttp

from pyworkspace import guest_code
from pyworkspace.core.errors import (
    PayloadValidationError,
    RuntimeNotInitializedError,
    WorkspaceError,
)
from pyworkspace.core.logging import WorkspaceLogger
from pyworkspace.core.models import (
    InstallationProgress,
    InstallStatus,
    PackageInfo,
    PackageSearchResult,
)
from pyworkspace.core.schemas import DependenciesPayload, PackagesPayload, parse_payload
from pyworkspace.guest_code import normalize_distribution_name
from pyworkspace.runtime import RuntimeController

ProgressCallback = Callable[[InstallationProgress], None]

_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


class PackageInstaller(ABC):
    """Host-side installer placing distributions into a target directory."""

    @abstractmethod
    async def install(self, requirement: str, target: Path) -> tuple[bool, str]:
        """Install one requirement into target.

        Args:
            requirement: Requirement specifier (e.g. "attrs" or "attrs==23.2.0")
            target: site-packages directory of the mount

        Returns:
            Tuple of (success, installer output or error detail)
        """
        pass


class ToolInstaller(PackageInstaller):
    """Installs with ``uv pip install --target`` or ``pip install --target``.

    For the wasm backend, installs are restricted to wheels for a given Python
    version without dependencies, since the WASM guest cannot load native
    extensions.
    """

    def __init__(
        self,
        tool: str = "auto",
        python_executable: str | None = None,
        index_url: str | None = None,
        only_binary: bool = False,
        python_version: str | None = None,
    ) -> None:
        self.tool = tool
        self.python_executable = python_executable or sys.executable
        self.index_url = index_url
        self.only_binary = only_binary
        self.python_version = python_version

    def resolve_tool(self) -> str:
        """Return "uv" or "pip" according to configuration and availability."""
        if self.tool == "uv" or (self.tool == "auto" and shutil.which("uv")):
            return "uv"
        return "pip"

    def build_command(self, requirement: str, target: Path) -> list[str]:
        if self.resolve_tool() == "uv":
            command = [shutil.which("uv") or "uv", "pip", "install", "--python", self.python_executable]
        else:
            command = [
                self.python_executable,
                "-m",
                "pip",
                "install",
                "--disable-pip-version-check",
                "--no-input",
                "--quiet",
            ]
        command += ["--target", str(target)]

        if self.index_url:
            command += ["--index-url", f"{self.index_url.rstrip('/')}/simple"]
        if self.only_binary:
            command.append("--only-binary=:all:")
            if self.python_version:
                command += ["--python-version", self.python_version]
            if self.resolve_tool() == "pip":
                command += ["--platform", "any"]
            command.append("--no-deps")
        command.append(requirement)
        return command

    async def install(self, requirement: str, target: Path) -> tuple[bool, str]:
        command = self.build_command(requirement, target)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return False, f"Failed to launch installer: {e}"
        stdout, stderr = await process.communicate()
        output = (stderr or stdout).decode("utf-8", errors="replace").strip()
        return process.returncode == 0, output


def parse_requirements(text: str) -> list[tuple[str, str | None]]:
    """Parse requirements text into (name, pinned version or None) pairs.

    Comments, blank lines and option lines (``-r``, ``--index-url``) are
    skipped. Only ``==`` pins are kept as versions; other specifiers install
    the latest release.
    """
    requirements: list[tuple[str, str | None]] = []
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        match = _REQUIREMENT_NAME.match(line)
        if match is None:
            continue
        name = match.group(1)
        version: str | None = None
        if "==" in line:
            version = line.split("==", 1)[1].split(";", 1)[0].split(",", 1)[0].strip() or None
        requirements.append((name, version))
    return requirements


class PackageManager:
    """Installs and queries Python distributions inside the workspace interpreter.

    Attributes:
        runtime: RuntimeController owning the interpreter
        installer: PackageInstaller used for installs
        index_url: Package index root used for search (PyPI JSON API)
        default_packages: Requirements installed by initialize() when missing
        logger: WorkspaceLogger for structured event logging
    """

    def __init__(
        self,
        runtime: RuntimeController,
        installer: PackageInstaller | None = None,
        index_url: str = "https://pypi.org",
        default_packages: Iterable[str] = (),
        http_timeout_seconds: float = 10.0,
        logger: WorkspaceLogger | None = None,
    ) -> None:
        self.runtime = runtime
        self.installer = installer
        self.index_url = index_url.rstrip("/")
        self.default_packages = list(default_packages)
        self.http_timeout_seconds = http_timeout_seconds
        self.logger = logger or runtime.logger

        self._installed: dict[str, PackageInfo] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def installed(self) -> list[PackageInfo]:
        """Cached installed set from the last refresh."""
        return sorted(self._installed.values(), key=lambda p: p.name.lower())

    async def initialize(self) -> None:
        """Prepare site-packages and load the installed set.

        Raises:
            RuntimeNotInitializedError: If the runtime is not ready
        """
        if not self.runtime.is_ready:
            raise RuntimeNotInitializedError()

        self.runtime.layout.site_packages.mkdir(parents=True, exist_ok=True)
        if self.installer is None:
            self.installer = ToolInstaller(only_binary=self.runtime.backend.name == "wasm")
        if isinstance(self.installer, ToolInstaller) and self.installer.only_binary:
            self.installer.python_version = self.installer.python_version or _major_minor(
                self.runtime.python_version
            )
        await self.get_installed_packages()

        for name, version in parse_requirements("\n".join(self.default_packages)):
            if not self.is_package_installed(name):
                await self.install_package(name, version)

        self._initialized = True

    def _report(
        self,
        on_progress: ProgressCallback | None,
        package: str,
        status: InstallStatus,
        progress: int,
        message: str = "",
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(
                InstallationProgress(package=package, status=status, progress=progress, message=message)
            )
        except Exception as e:
            self.logger.log_warning("package.progress_callback_failed", package=package, error=str(e))

    async def install_package(
        self,
        name: str,
        version: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> bool:
        """Install a distribution into the interpreter's site-packages.

        Args:
            name: Distribution name
            version: Optional exact version to pin
            on_progress: Optional callback receiving InstallationProgress updates

        Returns:
            True on success, False on any failure (never raises)
        """
        requirement = f"{name}=={version}" if version else name
        self._report(on_progress, name, InstallStatus.DOWNLOADING, 0, f"Resolving {requirement}")

        if not self.runtime.is_ready:
            detail = "Python runtime not initialized"
            self._report(on_progress, name, InstallStatus.ERROR, 0, detail)
            self.logger.log_package_event("install", requirement, False, detail)
            return False

        installer = self.installer or ToolInstaller()
        try:
            self._report(on_progress, name, InstallStatus.INSTALLING, 50, f"Installing {requirement}")
            success, detail = await installer.install(requirement, self.runtime.layout.site_packages)
        except Exception as e:
            success, detail = False, f"{type(e).__name__}: {e}"

        if not success:
            self._report(on_progress, name, InstallStatus.ERROR, 0, detail or f"Failed to install {requirement}")
            self.logger.log_package_event("install", requirement, False, detail)
            return False

        await self.get_installed_packages()
        self._report(on_progress, name, InstallStatus.COMPLETE, 100, f"Installed {requirement}")
        self.logger.log_package_event("install", requirement, True)
        return True

    async def install_packages(
        self, names: Iterable[str], on_progress: ProgressCallback | None = None
    ) -> dict[str, bool]:
        """Install several distributions in order, continuing past failures."""
        results: dict[str, bool] = {}
        for name in names:
            results[name] = await self.install_package(name, on_progress=on_progress)
        return results

    async def install_from_requirements(
        self, requirements: str, on_progress: ProgressCallback | None = None
    ) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for name, version in parse_requirements(requirements):
            results[name] = await self.install_package(name, version, on_progress)
        return results

    async def uninstall_package(self, name: str) -> bool:
        """Remove every file recorded for a distribution.

        Returns:
            True on success, False if the package is not installed or removal fails
        """
        if not self.runtime.is_ready:
            self.logger.log_package_event("uninstall", name, False, "Python runtime not initialized")
            return False
        try:
            site = self.runtime.guest_paths.site_packages
            result = await self.runtime.run_script(guest_code.uninstall(site, name))
        except WorkspaceError as e:
            self.logger.log_package_event("uninstall", name, False, str(e))
            return False

        if not result.success:
            self.logger.log_package_event("uninstall", name, False, result.error)
            return False

        self._installed.pop(normalize_distribution_name(name), None)
        self.logger.log_package_event("uninstall", name, True)
        return True

    async def get_installed_packages(self) -> list[PackageInfo]:
        """Scan site-packages inside the interpreter and refresh the cache.

        If the scan fails the cached set is returned and a warning is logged.
        """
        if not self.runtime.is_ready:
            raise RuntimeNotInitializedError()
        site = self.runtime.guest_paths.site_packages
        result = await self.runtime.run_script(guest_code.installed_packages(site))
        if not result.success:
            self.logger.log_warning("package.scan_failed", error=result.error)
            return self.installed
        try:
            payload = parse_payload(PackagesPayload, result.result)
        except PayloadValidationError as e:
            self.logger.log_warning("package.scan_failed", error=str(e))
            return self.installed

        self._installed = {normalize_distribution_name(p.name): p for p in payload.packages}
        return self.installed

    def is_package_installed(self, name: str) -> bool:
        return normalize_distribution_name(name) in self._installed

    def get_package_info(self, name: str) -> PackageInfo | None:
        return self._installed.get(normalize_distribution_name(name))

    async def get_package_dependencies(self, name: str) -> list[str]:
        """Names of the installed distribution's runtime requirements.

        Returns an empty list if the package is not installed.
        """
        site = self.runtime.guest_paths.site_packages
        result = await self.runtime.run_script(guest_code.dependencies(site, name))
        if not result.success:
            return []
        return parse_payload(DependenciesPayload, result.result).dependencies

    def export_requirements(self) -> str:
        """Render the installed set as ``name==version`` lines."""
        lines = [f"{p.name}=={p.version}" if p.version else p.name for p in self.installed]
        return "\n".join(lines) + ("\n" if lines else "")

    async def search_packages(self, query: str) -> list[PackageSearchResult]:
        """Look a package up in the index without installing it.

        The PyPI JSON API resolves exact names only, so the query is treated
        as a distribution name.

        Returns:
            Matching candidates; an empty list when nothing matches or the
            index is unreachable
        """
        name = query.strip()
        if not name:
            return []

        url = f"{self.index_url}/pypi/{quote(name, safe='')}/json"
        timeout = aiohttp.ClientTimeout(total=self.http_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.get(url, headers={"Accept": "application/json"}) as response:
                    if response.status == 404:
                        return []
                    response.raise_for_status()
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.log_warning("package.search_failed", query=name, error=f"{type(e).__name__}: {e}")
            return []

        info = data.get("info") if isinstance(data, dict) else None
        if not isinstance(info, dict):
            return []
        keywords = info.get("keywords") or ""
        if isinstance(keywords, str):
            keywords = [k.strip() for k in re.split(r"[,\s]+", keywords) if k.strip()]
        return [
            PackageSearchResult(
                name=info.get("name") or name,
                version=info.get("version") or "",
                description=info.get("summary") or "",
                author=info.get("author") or info.get("author_email") or "",
                homepage=info.get("home_page") or info.get("project_url") or "",
                keywords=list(keywords),
            )
        ]


def _major_minor(version: str | None) -> str | None:
    if not version:
        return None
    parts = version.split(".")
    return ".".join(parts[:2]) if len(parts) >= 2 else version
