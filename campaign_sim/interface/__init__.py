"""Terminal front-end for the campaign simulator."""

from .cli import build_parser, main, render_result

__all__ = ["build_parser", "main", "render_result"]
