from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_title(title: str) -> str:
    """Collapse surrounding whitespace in a task title.

    Raises ValueError for empty or whitespace-only titles.
    """
    if title is None:
        raise ValueError("invalid title: empty")
    t = title.strip()
    if not t:
        raise ValueError("invalid title: empty")
    return t


def normalize_tag(name: str) -> str:
    """Trim and lowercase a tag name, dropping a leading '#'.

    Raises ValueError for non-string or empty names.
    """
    if not isinstance(name, str):
        raise ValueError("invalid tag: not a string")
    t = name.strip()
    if t.startswith('#'):
        t = t[1:].strip()
    if not t:
        raise ValueError("invalid tag: empty")
    return t.lower()
