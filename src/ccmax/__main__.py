"""Allow running as ``python -m ccmax``."""

from ccmax.cli.main import app

if __name__ == "__main__":
    app()
