"""
CLI entry point for buildstash.

This module serves as the entry point when buildstash.cli is executed as a module
with `python -m buildstash.cli`.
"""

from .main import cli

if __name__ == "__main__":
    cli(prog_name="buildstash")
