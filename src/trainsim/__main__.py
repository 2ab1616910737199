"""Entry point for the trainsim-shell CLI."""

from typer import Typer

from trainsim import __version__
from trainsim.cli.backend.commands import backend_app
from trainsim.utils import console

app = Typer(
    name="trainsim-shell",
    help="Desktop shell tooling for the train simulation backend",
    no_args_is_help=True,
)
app.add_typer(backend_app)


@app.command(name="version", help="Print the trainsim-shell version")
def version():
    console.print(f"trainsim-shell {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
