"""
GitHub MCP Package Installer

Downloads a tool server package from GitHub, installs its dependencies and works out the
command that launches it. Node packages (package.json) and Python packages
(pyproject.toml / setup.py) are supported.
"""

from __future__ import annotations

import io
import json
import os
import re
import shutil
import subprocess
import sys
import tarfile
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import requests

from cloud_cost_shared.data_models import InstallConfig, ServerCommand
from cloud_cost_shared.exceptions import InstallError
from cloud_cost_shared.platform_manager import create_logger

logger = create_logger(logger_name="github-installer")

ARCHIVE_URL = "https://codeload.github.com/{owner}/{repo}/tar.gz/refs/heads/{branch}"
DOWNLOAD_TIMEOUT = 60
COMMAND_TIMEOUT = 600  # npm install / pip install

DEFAULT_INSTALL_DIR = Path(tempfile.gettempdir()) / "mcp-installs"

# Common MCP package locations, checked in order
PACKAGE_DIRS = ["mcp-server", "server", "packages/server", "packages/mcp", ""]
PACKAGE_MANIFESTS = ["package.json", "pyproject.toml", "setup.py"]
NODE_ENTRY_POINTS = ["dist/index.js", "build/index.js", "index.js", "src/index.js"]


def install_id(config: InstallConfig) -> str:
    """Directory name for an installation: owner-repo-branch with unsafe characters replaced."""
    return re.sub(r"[^a-zA-Z0-9-]", "_", f"{config.owner}-{config.repo}-{config.branch}")


class GitHubInstaller:
    def __init__(self, install_dir: str | Path = DEFAULT_INSTALL_DIR) -> None:
        self.install_dir = Path(install_dir)
        self.install_dir.mkdir(parents=True, exist_ok=True)

    def install_path(self, config: InstallConfig) -> Path:
        return self.install_dir / install_id(config)

    def install(self, config: InstallConfig) -> ServerCommand:
        """
        Install a tool server from GitHub and return the command that launches it.

        Any previous installation of the same owner/repo/branch is replaced.

        Raises:
            InstallError: If the download, the dependency install or the entry point
                lookup fails. The partial installation is removed.
        """
        target = self.install_path(config)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
        target.mkdir(parents=True)

        try:
            repo_dir = self._download(config, target)
            package_dir = (
                repo_dir / config.subdirectory if config.subdirectory else self._find_package_directory(repo_dir)
            )
            if not package_dir.is_dir():
                raise InstallError(f"Subdirectory not found in repository: {config.subdirectory}")

            if (package_dir / "package.json").exists():
                command = self._install_node_package(package_dir)
            elif (package_dir / "pyproject.toml").exists() or (package_dir / "setup.py").exists():
                command = self._install_python_package(package_dir, target)
            else:
                raise InstallError(f"No package.json, pyproject.toml or setup.py found in {package_dir}")

            logger.info(f"✓ MCP server installed: {command.describe()}")
            return command

        except InstallError:
            shutil.rmtree(target, ignore_errors=True)
            raise
        except (OSError, requests.RequestException, tarfile.TarError, subprocess.SubprocessError) as e:
            shutil.rmtree(target, ignore_errors=True)
            raise InstallError(f"Failed to install MCP from GitHub: {e}") from e

    def cleanup(self, config: InstallConfig) -> None:
        """Remove the installation directory for `config`, if present."""
        target = self.install_path(config)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
            logger.info(f"✓ Cleaned up installation: {target}")

    def _download(self, config: InstallConfig, target: Path) -> Path:
        url = ARCHIVE_URL.format(owner=config.owner, repo=config.repo, branch=config.branch)
        logger.info(f"Downloading repository from {url}...")

        response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
        if response.status_code == 404:
            raise InstallError(f"Repository or branch not found: {config.owner}/{config.repo}@{config.branch}")
        response.raise_for_status()

        extract_dir = target / "archive"
        with tarfile.open(fileobj=io.BytesIO(response.content), mode="r:gz") as archive:
            archive.extractall(extract_dir, filter="data")

        # Archives hold a single top-level directory named <repo>-<branch>
        entries = [p for p in extract_dir.iterdir() if p.is_dir()]
        if len(entries) != 1:
            raise InstallError(f"Unexpected archive layout for {config.owner}/{config.repo}")
        repo_dir = target / "repo"
        entries[0].rename(repo_dir)
        shutil.rmtree(extract_dir, ignore_errors=True)
        return repo_dir

    def _find_package_directory(self, repo_dir: Path) -> Path:
        for candidate in PACKAGE_DIRS:
            path = repo_dir / candidate if candidate else repo_dir
            if any((path / manifest).exists() for manifest in PACKAGE_MANIFESTS):
                return path
        # Default to root
        return repo_dir

    def _run(self, cmd: list[str], cwd: Path) -> None:
        logger.info(f"Running: {' '.join(cmd)} (in {cwd})")
        try:
            subprocess.run(
                cmd,
                cwd=cwd,
                check=True,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise InstallError(f"Command not found: {cmd[0]}") from e
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or "").strip().splitlines()
            detail = output[-1] if output else f"exit code {e.returncode}"
            raise InstallError(f"'{' '.join(cmd)}' failed: {detail}") from e

    # ------------------------------------------------------------------ node

    def _install_node_package(self, package_dir: Path) -> ServerCommand:
        logger.info(f"Installing dependencies in {package_dir}...")
        self._run(["npm", "install"], package_dir)

        pkg: dict[str, Any] = json.loads((package_dir / "package.json").read_text(encoding="utf-8"))
        if (pkg.get("scripts") or {}).get("build"):
            logger.info("Building package...")
            self._run(["npm", "run", "build"], package_dir)

        entry = self._find_node_entry(package_dir, pkg)
        if entry is None:
            raise InstallError("Could not locate MCP server executable in installed package")
        return ServerCommand(command="node", args=[str(entry)], cwd=str(package_dir))

    def _find_node_entry(self, package_dir: Path, pkg: dict[str, Any]) -> Path | None:
        for relative in NODE_ENTRY_POINTS:
            path = package_dir / relative
            if path.exists():
                return path

        bin_field = pkg.get("bin")
        if isinstance(bin_field, dict) and bin_field:
            bin_field = next(iter(bin_field.values()))
        if isinstance(bin_field, str) and (package_dir / bin_field).exists():
            return package_dir / bin_field

        main = pkg.get("main")
        if isinstance(main, str) and (package_dir / main).exists():
            return package_dir / main
        return None

    # ------------------------------------------------------------------ python

    def _install_python_package(self, package_dir: Path, target: Path) -> ServerCommand:
        venv_dir = target / "venv"
        logger.info(f"Creating virtual environment in {venv_dir}...")
        self._run([sys.executable, "-m", "venv", str(venv_dir)], target)

        bin_dir = venv_dir / ("Scripts" if os.name == "nt" else "bin")
        python = bin_dir / ("python.exe" if os.name == "nt" else "python")

        logger.info(f"Installing package from {package_dir}...")
        self._run([str(python), "-m", "pip", "install", str(package_dir)], package_dir)

        project = self._read_pyproject(package_dir)
        scripts = project.get("scripts") or {}
        if scripts:
            script_name = next(iter(scripts))
            script = bin_dir / (f"{script_name}.exe" if os.name == "nt" else script_name)
            if script.exists():
                return ServerCommand(command=str(script), cwd=str(package_dir))

        module = str(project.get("name") or package_dir.name).replace("-", "_")
        return ServerCommand(command=str(python), args=["-m", module], cwd=str(package_dir))

    def _read_pyproject(self, package_dir: Path) -> dict[str, Any]:
        path = package_dir / "pyproject.toml"
        if not path.exists():
            return {}
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise InstallError(f"Invalid pyproject.toml in {package_dir}: {e}") from e
        return data.get("project") or {}
