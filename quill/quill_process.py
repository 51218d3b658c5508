"""
The `subprocess` library: run host programs when the sandbox allows it.
"""
import asyncio
from typing import Any, Dict, Optional

from quill.quill_datatypes import QuillDict, iter_values
from quill.quill_errors import QuillTypeError
from quill.quill_library import LibraryBuilder
from quill.quill_sandbox import SandboxConfig, check_subprocess


def _argv(args) -> list:
    if isinstance(args, str):
        raise QuillTypeError("run() takes a list of arguments, not a shell string")
    argv = list(iter_values(args))
    if not argv or not all(isinstance(a, str) for a in argv):
        raise QuillTypeError("run() arguments must be a non-empty list of strings")
    return argv


async def run_process(argv: list, *, ctx, timeout: Optional[float] = None, input: Optional[str] = None) -> QuillDict:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    communicate = proc.communicate(input.encode("utf-8") if input is not None else None)
    try:
        if timeout is not None:
            stdout, stderr = await ctx.wait_for(asyncio.wait_for(communicate, timeout))
        else:
            stdout, stderr = await ctx.wait_for(communicate)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise TimeoutError(f"'{argv[0]}' timed out after {timeout} seconds") from None
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
    return QuillDict({
        "returncode": proc.returncode,
        "stdout": stdout.decode("utf-8", errors="replace"),
        "stderr": stderr.decode("utf-8", errors="replace"),
    })


def _bind(config: Optional[SandboxConfig]) -> Dict[str, Any]:
    async def run(args, timeout: float = None, input: str = None, *, ctx):
        """run(args, timeout=None, input=None) -> {"returncode", "stdout", "stderr"}"""
        argv = _argv(args)
        ctx.check()
        check_subprocess(config, argv)
        if ctx.sandbox is not None and ctx.sandbox is not config:
            check_subprocess(ctx.sandbox, argv)
        return await run_process(argv, ctx=ctx, timeout=timeout, input=input)

    return {"run": run}


SUBPROCESS_TEMPLATE = (LibraryBuilder("subprocess", "Run host programs (requires subprocess access)")
                       .template(_bind)
                       .build())
