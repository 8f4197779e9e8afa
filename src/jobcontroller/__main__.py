"""Entry point for ``python -m jobcontroller``."""

from jobcontroller.cli.app import app

if __name__ == "__main__":
    app()
