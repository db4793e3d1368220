"""Module entrypoint for `python -m shellpilot`."""

try:
    from .cli import run
except ImportError:
    # Script execution (runpy, frozen builds) runs this module outside package context.
    from shellpilot.cli import run


if __name__ == "__main__":
    raise SystemExit(run())
