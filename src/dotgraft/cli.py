"""Command-line interface for rendering DOT graphs with embedded code."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .code import DEFAULT_FONT_SIZE, DEFAULT_THEME, CodeOptions, render_code_segments
from .dotgraft import (
    DotGraftError,
    DotParseError,
    DuplicateNodeId,
    EmbeddingRenderer,
    EngineLoadFailure,
    FragmentError,
    LayoutFailure,
    MalformedOutput,
    NodeNotFound,
    RenderedNodeMissing,
    parse_dot,
)


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


# (hint, exit code, retryable) per library error.
_ERROR_MAP = {
    DotParseError: ("Check the DOT syntax of the graph input.", 2, True),
    FragmentError: ("Check --language, --theme, --font-size and --padding.", 2, True),
    NodeNotFound: ('Add id="..." to the node in the DOT graph or fix --code.', 3, True),
    DuplicateNodeId: ("Give every embedded node a unique id attribute.", 3, True),
    RenderedNodeMissing: ("Use node ids made of letters, digits and underscores.", 3, True),
    EngineLoadFailure: ("Install Graphviz or point --dot at the dot executable.", 5, False),
    LayoutFailure: ("Graphviz rejected the graph; check node and edge attributes.", 5, True),
    MalformedOutput: ("Graphviz produced unexpected SVG; check the Graphviz install.", 5, False),
}


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="dotgraft",
        description="Render DOT graphs with syntax-highlighted code embedded in nodes.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="command")

    render_parser = subparsers.add_parser("render", help="Render DOT with embedded code to SVG")
    render_parser.add_argument("input", nargs="?", help="Input .dot file")
    render_parser.add_argument("--text", help="Raw DOT source")
    render_parser.add_argument(
        "--code",
        action="append",
        default=[],
        metavar="ID=FILE",
        help="Embed the code in FILE into the node whose id attribute is ID",
    )
    render_parser.add_argument("--language", help="Highlight language (guessed when omitted)")
    render_parser.add_argument("--font-size", default=DEFAULT_FONT_SIZE)
    render_parser.add_argument("--theme", default=DEFAULT_THEME)
    render_parser.add_argument("--padding", default="0")
    render_parser.add_argument(
        "--dot",
        default=os.getenv("DOTGRAFT_DOT"),
        help="Path to the Graphviz dot executable",
    )
    render_parser.add_argument("--stdout", action="store_true", help="Write SVG to stdout")
    render_parser.add_argument("-o", "--output", help="Output .svg path")

    return parser


def _read_input(path: Optional[str], text: Optional[str]) -> tuple[str, Optional[Path]]:
    if path and text is not None:
        raise CliError(
            "E_ARGS",
            "--text cannot be combined with file input",
            hint="Use either FILE or --text.",
            exit_code=2,
        )

    if text is not None:
        return text, None

    if path:
        input_path = Path(path)
        if not input_path.exists():
            raise CliError(
                "E_IO_READ",
                f"input file not found: {input_path}",
                exit_code=2,
                file=str(input_path),
            )
        return _read_text(input_path), input_path

    if sys.stdin.isatty():
        raise CliError(
            "E_ARGS",
            "no input provided",
            hint="Pass a .dot FILE, --text, or pipe DOT into stdin.",
            exit_code=2,
        )

    data = sys.stdin.read()
    if not data.strip():
        raise CliError(
            "E_ARGS",
            "stdin was empty",
            hint="Pipe DOT content into stdin.",
            exit_code=2,
        )
    return data, None


def _read_text(path: Path) -> str:
    try:
        return path.read_text()
    except OSError as exc:
        raise CliError(
            "E_IO_READ",
            f"failed to read file: {path}",
            hint=str(exc),
            exit_code=2,
            file=str(path),
        )


def _read_code_segments(specs: List[str]) -> Dict[str, str]:
    segments: Dict[str, str] = {}
    for spec in specs:
        node_id, sep, filename = spec.partition("=")
        if not sep or not node_id or not filename:
            raise CliError(
                "E_ARGS",
                f"invalid --code value: {spec!r}",
                hint="Use --code ID=FILE.",
                exit_code=2,
            )
        code_path = Path(filename)
        if not code_path.exists():
            raise CliError(
                "E_IO_READ",
                f"code file not found: {code_path}",
                exit_code=2,
                file=str(code_path),
            )
        segments[node_id] = _read_text(code_path)
    return segments


def _write_text(path: Path, content: str) -> None:
    try:
        path.write_text(content)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, DotGraftError):
        hint, exit_code, retryable = _ERROR_MAP.get(type(exc), (None, 1, False))
        return CliError(exc.code, exc.message, hint=hint, exit_code=exit_code, retryable=retryable)
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


async def _render(args: argparse.Namespace, dot_source: str, segments: Dict[str, str]) -> str:
    graph = parse_dot(dot_source)
    options = CodeOptions(
        language=args.language,
        font_size=args.font_size,
        theme=args.theme,
        padding=args.padding,
    )
    fragments = await render_code_segments(segments, options)
    renderer = await EmbeddingRenderer.load(args.dot)
    return renderer.render_svg(graph, fragments)


def _handle_render(args: argparse.Namespace) -> int:
    if args.stdout and args.output:
        raise CliError(
            "E_ARGS",
            "--stdout and --output are mutually exclusive",
            hint="Choose either --stdout or --output.",
            exit_code=2,
        )

    source, source_path = _read_input(args.input, args.text)
    segments = _read_code_segments(args.code)
    svg_text = asyncio.run(_render(args, source, segments))

    if args.stdout or (source_path is None and not args.output):
        sys.stdout.write(svg_text)
        if not svg_text.endswith("\n"):
            sys.stdout.write("\n")
        return 0

    output_path = Path(args.output) if args.output else source_path.with_suffix(".svg")
    _write_text(output_path, svg_text)
    print(f"Wrote {output_path}")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use: dotgraft render GRAPH.dot --code ID=FILE.",
            exit_code=2,
        )
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("DOTGRAFT_DEBUG") == "1"
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.command == "render":
            return _handle_render(args)

        raise CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use: dotgraft render GRAPH.dot --code ID=FILE.",
            exit_code=2,
        )
    except UsageError as exc:
        err = CliError(
            "E_ARGS",
            str(exc),
            hint="Use: dotgraft render GRAPH.dot --code ID=FILE.",
            exit_code=2,
        )
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in integration tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
