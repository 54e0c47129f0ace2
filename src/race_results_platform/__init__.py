"""Race results synchronization and ranking platform.

Turns a paginated, rate-limited timing API into a de-duplicated, ranked and
cached set of race results, and keeps it fresh while an event is live.
"""

__version__ = "0.1.0"
