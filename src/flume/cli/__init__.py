"""Command-line interface for flume (``flume run`` / ``flume inspect``).

The Typer application lives in ``flume.cli.app``.
"""
