import typer

from .commands.bot import register_bot_commands
from .commands.utils import get_version
from .commands.utils import raise_exit as _raise_exit

app = typer.Typer(add_completion=False)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"frolf-discord {get_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_bot_commands(app, raise_exit=_raise_exit)
