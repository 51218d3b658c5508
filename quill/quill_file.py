"""
The `os` library: filesystem access gated by the sandbox.

OS_TEMPLATE is a template; instantiate(config) binds its functions to one
SandboxConfig. Every path is canonicalised (symlinks and `..` resolved)
before it is checked, both against the bound config and against the
sandbox of the calling execution context.
"""
from __future__ import annotations
import os
from typing import Any, Dict, Optional

from quill.quill_library import LibraryBuilder
from quill.quill_sandbox import SandboxConfig, check_path


def _gate(config: Optional[SandboxConfig], ctx, path: str) -> str:
    ctx.check()
    resolved = check_path(config, path)
    if ctx.sandbox is not None and ctx.sandbox is not config:
        check_path(ctx.sandbox, path)
    return resolved


def _bind(config: Optional[SandboxConfig]) -> Dict[str, Any]:
    async def read_file(path: str, encoding: str = "utf-8", *, ctx):
        """read_file(path, encoding='utf-8'): the file's text."""
        resolved = _gate(config, ctx, path)
        with open(resolved, "r", encoding=encoding) as f:
            return f.read()

    async def write_file(path: str, content: str, append: bool = False, *, ctx):
        """write_file(path, content, append=False): returns the number of characters written."""
        resolved = _gate(config, ctx, path)
        with open(resolved, "a" if append else "w", encoding="utf-8") as f:
            return f.write(content)

    async def list_dir(path: str = ".", *, ctx):
        resolved = _gate(config, ctx, path)
        return sorted(os.listdir(resolved))

    async def exists(path: str, *, ctx):
        resolved = _gate(config, ctx, path)
        return os.path.exists(resolved)

    async def remove(path: str, *, ctx):
        resolved = _gate(config, ctx, path)
        if os.path.isdir(resolved):
            raise IsADirectoryError(f"Is a directory: '{path}'")
        os.remove(resolved)

    async def makedirs(path: str, *, ctx):
        resolved = _gate(config, ctx, path)
        os.makedirs(resolved, exist_ok=True)

    async def getcwd(*, ctx):
        """getcwd(): the host's working directory, if the sandbox allows it."""
        return _gate(config, ctx, os.getcwd())

    return {
        "read_file": read_file,
        "write_file": write_file,
        "list_dir": list_dir,
        "exists": exists,
        "remove": remove,
        "makedirs": makedirs,
        "getcwd": getcwd,
    }


def _bind_path(config: Optional[SandboxConfig]) -> Dict[str, Any]:
    async def abspath(path: str, *, ctx):
        """abspath(path): relative paths resolve against the working directory, which is gated."""
        if not os.path.isabs(path):
            _gate(config, ctx, os.getcwd())
        return os.path.abspath(path)

    return {"abspath": abspath}


PATH_LIBRARY = (LibraryBuilder("path", "Path string helpers (no filesystem access)")
                .template(_bind_path)
                .function("join", lambda first, *rest: os.path.join(first, *rest))
                .function("basename", lambda path: os.path.basename(path))
                .function("dirname", lambda path: os.path.dirname(path))
                .function("splitext", lambda path: os.path.splitext(path))
                .function("normpath", lambda path: os.path.normpath(path))
                .constant("sep", os.sep)
                .build())

OS_TEMPLATE = (LibraryBuilder("os", "Filesystem access within the sandbox's allowed paths")
               .template(_bind)
               .sub_library("path", PATH_LIBRARY)
               .build())
