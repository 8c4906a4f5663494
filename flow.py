import asyncio
import json
import sys
from pathlib import Path

from logicflow.flow_runtime import ProjectRunner
from logicflow.flow_printer import Printer


def _parse_argument(raw: str):
    """Command line arguments are JSON when they parse as JSON, strings otherwise."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


async def run_project_file(file_path: str, operation_name: str = None, arguments=None):
    """Run one operation of a project file and exit with appropriate status."""
    runner = ProjectRunner()
    p = Path(file_path)
    try:
        runner.load(p)
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)

    if operation_name is None:
        for name in runner.operation_names():
            print(name)
        return

    result = await runner.run_file(operation_name, arguments)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    if result.data is not None:
        print(Printer(context=runner.context()).pformat(result.data))


async def main(argv=None):
    """flow.py <project.json|project.yaml> [operation-name] [json-args...]"""
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0].startswith("-"):
        print("usage: flow.py <project.json|project.yaml> [operation-name] [args...]", file=sys.stderr)
        raise SystemExit(2)
    operation_name = argv[1] if len(argv) > 1 else None
    arguments = [_parse_argument(a) for a in argv[2:]] or None
    await run_project_file(argv[0], operation_name, arguments)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    cli()
