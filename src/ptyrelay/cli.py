"""CLI entry point for ptyrelay."""

from __future__ import annotations

import logging

import typer
from pydantic import ValidationError

from ptyrelay.config import RelayConfig
from ptyrelay.controller import listen_session, run_session
from ptyrelay.pty.session import PtySession

app = typer.Typer(
    name="ptyrelay",
    help="Run a program on a pseudo-terminal and relay it to this terminal.",
    no_args_is_help=True,
    add_completion=False,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def print_banner(argv: list[str]) -> None:
    typer.echo(f"argc={len(argv)}")
    for i, arg in enumerate(argv):
        typer.echo(f'argv[{i}]="{arg}"')


@app.command(
    context_settings={"allow_interspersed_args": False, "ignore_unknown_options": True}
)
def run(
    program: str | None = typer.Argument(None, help="Program to run on the PTY."),
    args: list[str] | None = typer.Argument(None, help="Arguments for the program."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No startup banner."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="JSON configuration file."
    ),
    separate_stderr: bool | None = typer.Option(
        None,
        "--separate-stderr/--merge-stderr",
        help="Relay the program's stderr through its own pipe, or through the PTY.",
    ),
    listen: bool = typer.Option(
        False,
        "--listen",
        help="Open a PTY without a program and copy what is written to it to stdout.",
    ),
) -> None:
    """Run PROGRAM [ARGS]... as if it were started from an interactive terminal."""
    setup_logging(verbose)

    try:
        config = RelayConfig.load(config_file)
    except (ValidationError, ValueError, OSError) as e:
        typer.echo(f"Error: invalid configuration: {e}", err=True)
        raise typer.Exit(2)
    if separate_stderr is not None:
        config.separate_stderr = separate_stderr

    if listen:
        def _on_open(session: PtySession) -> None:
            if not quiet:
                typer.echo(f"slave device is: {session.slave_path}")

        raise typer.Exit(listen_session(config, on_open=_on_open))

    if not program:
        typer.echo("Error: missing PROGRAM.", err=True)
        raise typer.Exit(2)

    argv = [program, *(args or [])]
    if not quiet:
        print_banner(["ptyrelay", *argv])

    def _on_spawn(session: PtySession) -> None:
        if not quiet:
            typer.echo(f"child device is: {session.slave_path}")
            typer.echo(f"child pid {session.pid}")

    raise typer.Exit(run_session(argv, config, on_spawn=_on_spawn))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
