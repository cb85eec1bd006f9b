"""Entry point for ``python -m runboard``."""

from runboard.cli.commands import app

if __name__ == "__main__":
    app()
