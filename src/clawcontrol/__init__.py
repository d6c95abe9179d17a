"""Claw Control Center - task board and notification bridge for agent teams."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("claw-control-center")
except PackageNotFoundError:
    __version__ = "0.0.0"
