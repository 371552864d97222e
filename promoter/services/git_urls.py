"""Git repository URL normalization."""
import re
from urllib.parse import urlsplit, urlunsplit

_SCP_LIKE_URL = re.compile(r"^(?P<user>[\w.-]+)@(?P<host>[\w.-]+):(?P<path>(?!//).*)$")


def normalize_git_url(url: str) -> str:
    """Normalize a Git URL so that equivalent URLs compare equal.

    Case, surrounding whitespace, a trailing slash and a ".git" suffix are
    ignored, and SCP-style URLs (git@host:org/repo) become ssh:// URLs.
    """
    url = url.strip().lower()
    match = _SCP_LIKE_URL.match(url)
    if match:
        url = f"ssh://{match.group('user')}@{match.group('host')}/{match.group('path').lstrip('/')}"
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))
