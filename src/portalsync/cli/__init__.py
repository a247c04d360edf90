"""portalsync command line interface."""

from portalsync.cli.main import app

__all__ = ["app"]
