"""Allow ``python -m category_spine``."""

from category_spine.cli.app import app

app()
