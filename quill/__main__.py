import argparse
import asyncio
import sys
from pathlib import Path

from quill.quill_printer import Printer
from quill.quill_runtime import Interpreter, ScriptRunner
from quill.quill_sandbox import SandboxConfig


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def print_effects(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))


async def run_script_file(runner: ScriptRunner, file_path: str) -> int:
    """Run a Quill script file non-interactively; returns the process exit status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    result = await runner.handle_script(source)
    print_effects(result)
    if result.status == 'exit':
        return result.exit_code or 0
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return 1
    return 0


async def repl(runner: ScriptRunner):
    print("Quill REPL")
    print("Type 'exit' or press Ctrl+D to quit.")
    printer = Printer()
    while True:
        try:
            raw = await ainput(">> ")
        except KeyboardInterrupt:
            print()
            continue
        if raw == "":
            print("\nExiting.")
            return
        line = raw.rstrip("\n")
        if not line.strip():
            continue
        if line.strip() == "exit":
            return
        # Block statements continue until a blank line
        if line.rstrip().endswith(":"):
            lines = [line]
            while True:
                more = (await ainput(".. ")).rstrip("\n")
                if not more.strip():
                    break
                lines.append(more)
            line = "\n".join(lines)

        result = await runner.handle_script(line)
        print_effects(result)
        if result.status == 'exit':
            return
        if result.status == 'error':
            print(result.format_error(), file=sys.stderr)
            continue
        if result.value is not None:
            print(printer.pformat(result.value))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quill", description="Run Quill scripts.")
    parser.add_argument("script", nargs="?", help="script file to run; omit for a REPL")
    parser.add_argument("--sandbox", metavar="CONFIG",
                        help="YAML sandbox config; without it scripts run unrestricted")
    parser.add_argument("--timeout", type=float, default=None, help="deadline in seconds")
    parser.add_argument("--max-depth", type=int, default=200, help="maximum call depth")
    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.sandbox:
        sandbox = SandboxConfig.from_yaml(args.sandbox)
    else:
        sandbox = SandboxConfig.unrestricted(timeout=args.timeout)
    if args.timeout is not None and sandbox.timeout is None:
        sandbox = SandboxConfig(sandbox.allowed_paths, sandbox.allow_network, sandbox.allow_subprocess,
                                args.timeout, sandbox.restricted)
    runner = ScriptRunner(Interpreter(sandbox, max_depth=args.max_depth))
    if args.script:
        return await run_script_file(runner, args.script)
    await repl(runner)
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    cli()
