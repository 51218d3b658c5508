"""
Per-evaluation execution context: cancellation, deadline, sandbox and
output sink.
"""
import asyncio
import sys
import threading
import time
from typing import Any, Optional

from quill.quill_errors import Cancelled

# Items a native loop consumes between cancellation checks.
CHECK_EVERY = 1000


class CancellationToken:
    """Thread-safe cancel flag. cancel() may be called from any thread."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ExecutionContext:
    """Everything one evaluation needs besides the AST.

    The deadline is an absolute time.monotonic() value. The evaluator calls
    check() at loop iterations and call entry; blocking builtins call it
    before and while they wait.
    """

    def __init__(self, token: Optional[CancellationToken] = None, deadline: Optional[float] = None,
                 sandbox: Any = None, output: Any = None, env: Any = None):
        self.token = token or CancellationToken()
        self.deadline = deadline
        self.sandbox = sandbox
        self.output = output if output is not None else sys.stdout
        self.env = env

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs) -> 'ExecutionContext':
        return cls(deadline=time.monotonic() + seconds, **kwargs)

    def cancel(self, reason: Optional[str] = None):
        self.token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled or self.expired

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self):
        if self.token.cancelled:
            raise Cancelled(self.token.reason or "execution cancelled")
        if self.expired:
            raise Cancelled("execution deadline exceeded")

    def checked(self, values, every: int = CHECK_EVERY):
        """Yields from values, calling check() every `every` items."""
        for i, value in enumerate(values):
            if i % every == 0:
                self.check()
            yield value

    def write(self, text: str):
        self.output.write(text)

    async def sleep(self, seconds: float, step: float = 0.05):
        """Sleeps cooperatively, waking up to notice cancellation."""
        self.check()
        end = time.monotonic() + max(0.0, seconds)
        while True:
            left = end - time.monotonic()
            if left <= 0:
                break
            await asyncio.sleep(min(step, left))
            self.check()

    async def wait_for(self, awaitable):
        """Awaits `awaitable`, cancelling it when the context is cancelled."""
        self.check()
        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                timeout = 0.05
                remaining = self.remaining()
                if remaining is not None:
                    timeout = min(timeout, remaining)
                done, _ = await asyncio.wait({task}, timeout=timeout)
                if done:
                    return task.result()
                self.check()
        finally:
            if not task.done():
                task.cancel()
