"""Decode pipeline driver, stage registry and helper components."""

__all__ = [
    "commands",
    "config",
    "ctm",
    "errors",
    "fanout",
    "files",
    "layout",
    "logging_utils",
    "naming",
    "normalization",
    "orchestrator",
    "scoring",
    "segmenter",
    "stages",
    "tables",
    "transcripts",
]
