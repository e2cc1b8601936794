"""Executable discovery shared by CLI providers."""

from __future__ import annotations

import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

_VERSION_PARTS = re.compile(r"\d+")


@dataclass(slots=True)
class PathEnvironment:
    """Read-only inputs that influence executable discovery."""

    platform: str = field(default_factory=lambda: sys.platform)
    home: Path = field(default_factory=Path.home)
    environ: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    which: Callable[[str], str | None] = shutil.which

    def platform_key(self) -> str:
        if self.platform.startswith("win"):
            return "win32"
        if self.platform == "darwin":
            return "darwin"
        return "linux"


def _version_key(path: Path) -> tuple[int, ...]:
    return tuple(int(part) for part in _VERSION_PARTS.findall(path.name))


def nvm_candidates(cli_name: str, env: PathEnvironment) -> list[Path]:
    """Return ``<nvm>/versions/node/<version>/bin/<cli>`` entries, newest node first."""

    nvm_dir = Path(env.environ.get("NVM_DIR") or env.home / ".nvm")
    versions_dir = nvm_dir / "versions" / "node"
    if not versions_dir.is_dir():
        return []
    versions = sorted(
        (entry for entry in versions_dir.iterdir() if entry.is_dir()),
        key=_version_key,
        reverse=True,
    )
    return [version / "bin" / cli_name for version in versions]


def candidate_paths(
    cli_name: str,
    env: PathEnvironment,
    *,
    override: str | None = None,
) -> list[Path]:
    """Ordered list of well-known install locations for ``cli_name``.

    Managed installs come before anything the generic ``PATH`` lookup could
    return, because stale npm shims tend to shadow them on ``PATH``.
    """

    paths: list[Path] = []
    if override:
        paths.append(Path(override).expanduser())

    key = env.platform_key()
    if key == "win32":
        local_appdata = env.environ.get("LOCALAPPDATA", "")
        paths.extend(
            [
                env.home / f".{cli_name}" / "local" / f"{cli_name}.exe",
                Path(local_appdata) / "Programs" / cli_name / f"{cli_name}.exe",
            ]
        )
        return paths

    paths.extend(nvm_candidates(cli_name, env))
    paths.extend(
        [
            env.home / f".{cli_name}" / "local" / cli_name,
            env.home / ".local" / "bin" / cli_name,
            Path("/usr/local/bin") / cli_name,
        ]
    )
    return paths


def find_executable(
    cli_name: str,
    env: PathEnvironment | None = None,
    *,
    override: str | None = None,
) -> Path | None:
    """Return the first existing candidate path, falling back to ``PATH``."""

    env = env or PathEnvironment()
    if override and not Path(override).expanduser().is_file():
        logger.warning(
            "Configured CLI override does not exist",
            extra={"cli": cli_name, "override": override},
        )
        return None

    for candidate in candidate_paths(cli_name, env, override=override):
        if candidate.is_file():
            logger.debug("Found CLI executable", extra={"cli": cli_name, "path": str(candidate)})
            return candidate

    binary = env.which(cli_name)
    if binary is None:
        return None
    return Path(binary)


__all__ = ["PathEnvironment", "candidate_paths", "find_executable", "nvm_candidates"]
