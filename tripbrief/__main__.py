"""Module entrypoint for `python -m tripbrief`."""

from tripbrief.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
