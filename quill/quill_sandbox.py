"""
Capability sandbox: which host resources a script may touch.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml

from quill.quill_errors import PermissionDenied


@dataclass(frozen=True)
class SandboxConfig:
    """Restricted by default: no paths, no network, no subprocesses."""
    allowed_paths: Tuple[str, ...] = ()
    allow_network: bool = False
    allow_subprocess: bool = False
    timeout: Optional[float] = None
    restricted: bool = True

    def __post_init__(self):
        object.__setattr__(self, "allowed_paths", tuple(str(p) for p in self.allowed_paths))

    @classmethod
    def unrestricted(cls, timeout: Optional[float] = None) -> 'SandboxConfig':
        return cls(allow_network=True, allow_subprocess=True, timeout=timeout, restricted=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'SandboxConfig':
        data = dict(data or {})
        known = {"allowed_paths", "allow_network", "allow_subprocess", "timeout", "restricted"}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown sandbox option(s): {', '.join(sorted(unknown))}")
        if data.get("restricted") is False:
            return cls.unrestricted(timeout=data.get("timeout"))
        return cls(
            allowed_paths=tuple(data.get("allowed_paths") or ()),
            allow_network=bool(data.get("allow_network", False)),
            allow_subprocess=bool(data.get("allow_subprocess", False)),
            timeout=data.get("timeout"),
        )

    @classmethod
    def from_yaml(cls, path) -> 'SandboxConfig':
        """Reads a config file; a top-level `sandbox:` key is optional."""
        text = Path(path).read_text(encoding="utf-8")
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError(f"sandbox config {path} must be a mapping")
        if "sandbox" in data and isinstance(data["sandbox"], dict):
            data = data["sandbox"]
        return cls.from_dict(data)

    def with_paths(self, *paths: str) -> 'SandboxConfig':
        return SandboxConfig(self.allowed_paths + tuple(str(p) for p in paths), self.allow_network,
                             self.allow_subprocess, self.timeout, self.restricted)


def canonicalize(path: Any) -> str:
    return os.path.realpath(os.path.expanduser(os.fspath(path)))


def path_allowed(config: SandboxConfig, path: Any) -> bool:
    if not config.restricted:
        return True
    canonical = canonicalize(path)
    for prefix in config.allowed_paths:
        base = canonicalize(prefix)
        if canonical == base or canonical.startswith(base.rstrip(os.sep) + os.sep):
            return True
    return False


def check_path(config: Optional[SandboxConfig], path: Any) -> str:
    """Returns the canonical path, or raises PermissionDenied."""
    if config is None:
        raise PermissionDenied(f"access to '{path}' denied: no sandbox configured")
    if not path_allowed(config, path):
        raise PermissionDenied(f"access to '{path}' denied by sandbox")
    return canonicalize(path)


def check_network(config: Optional[SandboxConfig], url: str):
    if config is None or (config.restricted and not config.allow_network):
        raise PermissionDenied(f"network access to '{url}' denied by sandbox")


def check_subprocess(config: Optional[SandboxConfig], argv):
    if config is None or (config.restricted and not config.allow_subprocess):
        name = argv[0] if argv else "<empty>"
        raise PermissionDenied(f"running '{name}' denied by sandbox")
