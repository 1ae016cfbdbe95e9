"""mediarelay: stream yt-dlp downloads back over HTTP."""

__version__ = "1.0.0"
