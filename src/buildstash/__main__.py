"""Entry point for `python -m buildstash`."""

from .cli.main import main

if __name__ == "__main__":
    main()
