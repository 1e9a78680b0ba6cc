"""DDSketch encoding, TID-based metric merging, SQLite metric tables, storage profiles and work-queue helpers."""

__version__ = "0.1.0"