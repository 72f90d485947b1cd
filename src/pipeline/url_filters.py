from urllib.parse import urlparse

# Listing, taxonomy and API paths that never hold a single article.
NON_ARTICLE_PATH_SEGMENTS = [
    "/category/",
    "/tag/",
    "/page/",
    "/archive/",
    "/feed/",
    "/wp-json/",
    "/api/",
]

# Syndication feeds and static assets.
NON_ARTICLE_EXTENSIONS = [
    ".xml",
    ".rss",
    ".atom",
    ".css",
    ".js",
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".svg",
    ".ico",
    ".pdf",
    ".json",
]

# Site sections that link hubs rather than stories.
NON_ARTICLE_EXACT_PATHS = {"/", "/learn", "/resources"}

SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "#")


def check_is_article(url, seed_url=None):
    """Return True when ``url`` could be an individual article page.

    The check is purely structural: scheme, listing segments, syndication
    extensions and a minimum path length. ``seed_url`` excludes the page
    the links were harvested from.
    """
    if not url:
        return False

    lowered = url.strip().lower()
    if lowered.startswith(SKIPPED_SCHEMES):
        return False

    try:
        parsed = urlparse(lowered)
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False

    if seed_url and _same_page(url, seed_url):
        return False

    path = parsed.path or "/"
    # Normalize with a trailing slash so '/feed' matches '/feed/' but
    # '/feeding-program' does not.
    path_with_slash = path if path.endswith("/") else path + "/"

    for segment in NON_ARTICLE_PATH_SEGMENTS:
        if segment in path_with_slash:
            return False

    for extension in NON_ARTICLE_EXTENSIONS:
        if path.endswith(extension):
            return False

    stripped = path.rstrip("/") or "/"
    if stripped in NON_ARTICLE_EXACT_PATHS:
        return False
    if len(stripped) < 3:
        return False

    return True


def _same_page(url, other):
    a = urlparse(url.strip())
    b = urlparse(other.strip())
    host_a = a.netloc.lower().removeprefix("www.")
    host_b = b.netloc.lower().removeprefix("www.")
    return host_a == host_b and a.path.rstrip("/") == b.path.rstrip("/")
