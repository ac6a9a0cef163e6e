"""Entry point for ``python -m adr_cli`` and the ``adr`` console script."""

from __future__ import annotations

from adr_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
