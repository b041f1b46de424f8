"""
contextkeeper CLI - externally triggered batch runs.

This package splits CLI commands into focused modules:
- main:  checkpoint, rotate, bootstrap, summarize
- index: build, regenerate (memory INDEX.md)
"""

import typer

from contextkeeper.cli.index import index_app
from contextkeeper.cli.main import configure_logging, load_environment, register_commands

app = typer.Typer(help="contextkeeper - session lifecycle controller for long-running agents")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    contextkeeper - session lifecycle controller for long-running agents.
    """
    configure_logging(verbose)
    load_environment()


# Top-level batch commands (checkpoint, rotate, bootstrap, summarize)
register_commands(app)

app.add_typer(index_app, name="index")

if __name__ == "__main__":
    app()
