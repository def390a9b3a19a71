from __future__ import annotations

from importlib import metadata
from typing import NoReturn, Optional

import typer


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def get_version() -> str:
    try:
        return metadata.version("frolf-discord")
    except metadata.PackageNotFoundError:
        from .... import __version__

        return __version__
