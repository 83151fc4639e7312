"""Command-line interface for exec-broker.

Usage:
    exec-broker run 'print("hello")'               # Run inline code (python)
    exec-broker run main.c                         # Run file (language from extension)
    echo 'print(1)' | exec-broker run -            # Run from stdin
    exec-broker run -l bash -c 'echo hi' --json    # JSON result
    exec-broker serve --port 3000                  # HTTP service
    exec-broker languages                          # List enabled languages
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import BinaryIO, NoReturn

import click

from exec_broker import __version__
from exec_broker._logging import configure_logging
from exec_broker.config import BrokerConfig
from exec_broker.exceptions import AdmissionRejectedError, BrokerError, UnsupportedLanguageError
from exec_broker.models import ExecutionResult, OutcomeKind
from exec_broker.registry import RunnerRegistry
from exec_broker.scheduler import Scheduler
from exec_broker.settings import Settings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_BROKER_ERROR = 125
EXIT_SIGNAL_BASE = 128

# File extension to language mapping
EXTENSION_MAP: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".java": "java",
    ".kt": "kotlin",
    ".groovy": "groovy",
    ".c": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".swift": "swift",
    ".sh": "bash",
    ".html": "html",
}


def detect_language(source: str | None) -> str | None:
    """Auto-detect language from file extension.

    Args:
        source: File path or stdin marker ("-") or inline code

    Returns:
        Detected language name or None if cannot detect
    """
    if not source or source == "-":
        return None

    path = Path(source)
    if path.suffix:
        return EXTENSION_MAP.get(path.suffix.lower())

    return None


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_result_json(result: ExecutionResult) -> str:
    """Format execution result as JSON."""
    return json.dumps(result.model_dump(mode="json"), indent=2)


def exit_code_for(result: ExecutionResult) -> int:
    """Map an execution result to the CLI's own exit status."""
    if result.outcome is OutcomeKind.TIMEOUT:
        return EXIT_TIMEOUT
    if result.outcome is OutcomeKind.INTERNAL_ERROR:
        return EXIT_BROKER_ERROR
    if result.signal is not None:
        return EXIT_SIGNAL_BASE + result.signal
    if result.exit_code is not None:
        return result.exit_code
    return EXIT_SUCCESS if result.ok else EXIT_FAILURE


def is_tty() -> bool:
    """Check if stdout is connected to a terminal."""
    return sys.stdout.isatty()


async def run_code(
    code: str,
    language: str,
    stdin: bytes | None,
    timeout: float,
    config: BrokerConfig,
    json_output: bool,
    quiet: bool,
) -> int:
    """Execute code once and return the CLI exit code.

    Args:
        code: Code to execute
        language: Language identifier
        stdin: Bytes piped to the program (None = empty)
        timeout: Wall-clock timeout in seconds
        config: Broker configuration
        json_output: Output as JSON
        quiet: Suppress the timing footer

    Returns:
        Exit code to return from CLI
    """
    try:
        async with Scheduler(config) as scheduler:
            result = await scheduler.run(code, language, stdin=stdin, timeout_seconds=timeout)

    except UnsupportedLanguageError as e:
        click.echo(
            format_error(
                f"Unsupported language: {e.language}",
                e.message,
                ["Run `exec-broker languages` to list the enabled languages"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    except AdmissionRejectedError as e:
        click.echo(format_error("Broker busy", e.message), err=True)
        return EXIT_BROKER_ERROR

    except BrokerError as e:
        click.echo(format_error("Broker error", e.message), err=True)
        return EXIT_BROKER_ERROR

    if json_output:
        click.echo(format_result_json(result))
        return exit_code_for(result)

    if result.stdout:
        click.echo(result.stdout, nl=False)
    if result.stderr:
        click.echo(result.stderr, nl=False, err=True)
    if result.stdout_truncated or result.stderr_truncated:
        click.echo(click.style("[output truncated]", fg="yellow"), err=True)

    if result.outcome is OutcomeKind.TIMEOUT:
        click.echo(
            format_error(
                "Execution timed out",
                result.diagnostic or f"The code did not complete within {timeout} seconds.",
                ["Increase timeout with -t/--timeout", "Check for infinite loops in your code"],
            ),
            err=True,
        )
    elif not result.ok and result.diagnostic and not result.stderr:
        click.echo(format_error(result.outcome.value.replace("_", " ").capitalize(), result.diagnostic), err=True)

    # TTY mode: show timing footer
    if is_tty() and not quiet:
        style = {"fg": "green"} if result.ok else {"fg": "red"}
        mark = "✓" if result.ok else "✗"
        click.echo(click.style(f"{mark} {result.outcome.value} in {result.duration_ms}ms", dim=True, **style), err=True)

    return exit_code_for(result)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--log-level", default=None, help="Log level (default: EXEC_BROKER_LOG_LEVEL or WARNING)")
@click.version_option(__version__, "-V", "--version", prog_name="exec-broker")
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """Run untrusted code under bounded resources."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@main.command()
@click.argument("source", required=False)
@click.option("-l", "--language", help="Language identifier (auto-detected from file extension)")
@click.option("-c", "--code", "inline_code", help="Code to execute (alternative to SOURCE)")
@click.option(
    "-t",
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Wall-clock timeout in seconds",
)
@click.option("--stdin-file", type=click.File("rb"), default=None, help="File piped to the program's stdin")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.pass_context
def run(
    ctx: click.Context,
    source: str | None,
    language: str | None,
    inline_code: str | None,
    timeout: float | None,
    stdin_file: BinaryIO | None,
    json_output: bool,
    quiet: bool,
) -> NoReturn:
    """Execute code once and exit with the program's status.

    SOURCE can be:

    \b
      - Inline code:  exec-broker run 'print("hello")'
      - File path:    exec-broker run main.c
      - Stdin:        echo 'print(1)' | exec-broker run -

    Exit status is the program's own; 124 on timeout, 125 on broker errors.
    """
    code: str

    if inline_code:
        # -c/--code takes precedence
        code = inline_code
    elif source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin or use -c flag.")
        code = sys.stdin.read()
    elif source:
        # Check if it's a file, otherwise treat as inline code
        path = Path(source)
        code = path.read_text(encoding="utf-8") if path.exists() and path.is_file() else source
    else:
        raise click.UsageError("No code provided. Provide SOURCE argument or use -c flag.")

    resolved_language = (language or detect_language(source) or "python").lower()
    if RunnerRegistry().lookup(resolved_language) is None:
        raise click.UsageError(f"Unknown language: {resolved_language}")

    configure_logging(level=ctx.obj.get("log_level"), quiet=quiet)
    settings = Settings()
    config = settings.to_config()
    effective_timeout = timeout if timeout is not None else config.default_timeout_seconds

    exit_code = asyncio.run(
        run_code(
            code=code,
            language=resolved_language,
            stdin=stdin_file.read() if stdin_file is not None else None,
            timeout=effective_timeout,
            config=config,
            json_output=json_output,
            quiet=quiet,
        )
    )
    sys.exit(exit_code)


@main.command()
@click.option("--host", default=None, help="Bind address (default: EXEC_BROKER_HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: EXEC_BROKER_PORT)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Serve the HTTP API under uvicorn."""
    import uvicorn  # noqa: PLC0415

    from exec_broker.server import create_app  # noqa: PLC0415

    settings = Settings()
    configure_logging(level=ctx.obj.get("log_level") or settings.log_level)
    app = create_app(settings=settings)
    uvicorn.run(app, host=host or settings.host, port=port or settings.port, log_config=None)


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def languages(json_output: bool) -> None:
    """List enabled languages."""
    settings = Settings()
    registry = RunnerRegistry(disabled=settings.to_config().disabled_languages)
    rows = [registry.lookup(ident) for ident in registry.identifiers()]
    if json_output:
        click.echo(json.dumps([{"identifier": d.identifier, "kind": d.kind.value} for d in rows if d], indent=2))
        return
    for descriptor in rows:
        if descriptor is not None:
            click.echo(f"{descriptor.identifier:<12} {descriptor.kind.value}")


if __name__ == "__main__":
    main()
