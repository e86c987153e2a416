"""Allow ``python -m flume``."""

from flume.cli.app import app

if __name__ == "__main__":
    app()
