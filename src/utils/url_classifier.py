"""URL classification utilities used when recording discovered links.

A discovered link is either a ``post`` (hosted on the organization's own
site, the same host as the seed page) or ``news`` (third-party coverage
on another host).
"""

from src.crawler.utils import is_same_host

URL_TYPE_POST = "post"
URL_TYPE_NEWS = "news"


def classify_url(url: str, seed_url: str) -> str:
    """Classify ``url`` relative to the seed page it was found on.

    Examples:
        >>> classify_url("https://org.example/blog/a", "https://org.example/news")
        'post'
        >>> classify_url("https://www.org.example/a", "https://org.example/news")
        'post'
        >>> classify_url("https://paper.example/story", "https://org.example/news")
        'news'
    """
    if is_same_host(url, seed_url):
        return URL_TYPE_POST
    return URL_TYPE_NEWS
