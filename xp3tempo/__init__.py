"""XP3 Tempo - Tempo-shift the Ogg audio inside KiriKiri XP3 archives.

Core modules:
- orchestrator: unpack -> transcode -> repack pipeline with backup
- archive: narrow archive capability interface and the XP3 codec
- transcoder: external ffmpeg invocation behind a swappable interface
- utils: atomic replace, member sniffing, path conventions, failpoints
"""

__version__ = "0.1.0"
