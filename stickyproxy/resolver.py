"""Static-site fallback resolution of request paths against the manifest.

Static export tooling writes route-based pages as ``about.html``,
``about/index.html`` or hidden ``_index`` variants. The resolver reproduces the
precedence the build used, so a request for ``/about`` or ``/about/`` lands on
the same file the site author intended.

A final path segment containing a dot is taken to be a concrete file and is
never expanded with HTML fallbacks. This is a heuristic: an extension-less
route such as ``/v1.2`` is treated as a file.
"""

from collections.abc import Callable, Mapping, Sequence
from urllib.parse import quote, unquote, urljoin, urlsplit

from .config import FALLBACK_RULES
from .manifest import normalize_path
from .models import Candidate


def _split(path: str) -> tuple[str, str]:
    """Split a normalized path into (directory, final segment)."""
    directory, _, name = path.rpartition("/")
    return directory, name


def _index(path: str) -> str | None:
    return "/index.html" if path == "/" else None


def _html(path: str) -> str | None:
    return f"{path}.html" if path != "/" else None


def _dir_index(path: str) -> str | None:
    return f"{path}/index.html" if path != "/" else None


def _hidden_index(path: str) -> str | None:
    return f"{path}/_index.html" if path != "/" else None


def _hidden_dir_index(path: str) -> str | None:
    return f"{path}/_index/index.html" if path != "/" else None


def _hidden_html(path: str) -> str | None:
    if path == "/":
        return None
    directory, name = _split(path)
    return f"{directory}/_{name}.html"


def _hidden_name_index(path: str) -> str | None:
    if path == "/":
        return None
    directory, name = _split(path)
    return f"{directory}/_{name}/index.html"


# Rule name -> function building the fallback path, or None when not applicable
_RULES: dict[str, Callable[[str], str | None]] = {
    "index": _index,
    "html": _html,
    "dir-index": _dir_index,
    "hidden-index": _hidden_index,
    "hidden-dir-index": _hidden_dir_index,
    "hidden-html": _hidden_html,
    "hidden-name-index": _hidden_name_index,
}


def split_request(path_or_url: str) -> tuple[str, bool]:
    """Reduce a request path or URL to (normalized path, had trailing slash).

    Percent-escapes are decoded, so "/caf%C3%A9" matches the "/café" entry.
    """
    path = unquote(urlsplit(path_or_url).path) or "/"
    return normalize_path(path), path.endswith("/") and path != "/"


def candidate_for(path: str, digest: str, origin: str) -> Candidate:
    """Build the candidate fetching a manifest path from origin."""
    return Candidate(path=path, url=urljoin(origin, quote(path)), digest=digest)


def _ordered_rules(rules: Sequence[str], directory_request: bool) -> list[str]:
    ordered = list(rules)
    # A trailing slash asks for a directory: prefer its index over a sibling file
    if directory_request and "dir-index" in ordered and "html" in ordered:
        ordered.remove("dir-index")
        ordered.insert(ordered.index("html"), "dir-index")
    return ordered


def candidate_paths(path_or_url: str, rules: Sequence[str] = FALLBACK_RULES) -> list[str]:
    """Return every path the resolver would try, in priority order.

    The list is not filtered against any manifest.
    """
    path, directory_request = split_request(path_or_url)
    paths = [path]

    if "." in _split(path)[1]:
        return paths

    for rule in _ordered_rules(rules, directory_request):
        fallback = _RULES[rule](path)
        if fallback is not None and fallback not in paths:
            paths.append(fallback)
    return paths


def resolve(
    path_or_url: str,
    manifest: Mapping[str, str],
    origin: str,
    rules: Sequence[str] = FALLBACK_RULES,
) -> tuple[Candidate, ...]:
    """Resolve a request against the manifest.

    Args:
        path_or_url: Request path or absolute URL. Query and fragment are ignored.
        manifest: Mapping of normalized path -> digest.
        origin: Base URL candidates are fetched from.
        rules: Fallback rule names, in priority order.

    Returns:
        The first candidate present in the manifest, as a one-element tuple,
        or an empty tuple when nothing matches.
    """
    for path in candidate_paths(path_or_url, rules):
        digest = manifest.get(path)
        if digest is not None:
            return (candidate_for(path, digest, origin),)
    return ()
