"""category-spine command-line interface."""

from category_spine.cli.app import app

__all__ = ["app"]
