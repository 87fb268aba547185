"""`python -m bookface_mcp` and the `bookface-mcp` console script."""

from .cli import app


def main() -> None:
    app(prog_name="bookface-mcp")


if __name__ == "__main__":  # pragma: no cover
    main()
