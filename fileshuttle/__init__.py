"""LAN file transfer server: browse, download and resumably upload files."""

from .app import VERSION, create_app
from .server import FileShuttleServer

__all__ = ["VERSION", "FileShuttleServer", "create_app"]
