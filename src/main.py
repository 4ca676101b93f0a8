"""Main entry point for tukan.

`tukan` with no subcommand behaves like `tukan board`.
"""
from cli import cli


def main():
    cli(prog_name="tukan")


if __name__ == "__main__":
    main()
