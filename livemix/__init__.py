"""SQLite storage of HLS video sources, segments and recordings, with edge-node coordination."""

__version__ = "0.1.0"