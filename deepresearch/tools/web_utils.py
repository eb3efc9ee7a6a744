from __future__ import annotations

import re
from urllib.parse import urlparse

from bs4 import BeautifulSoup

_NON_CONTENT_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "form", "svg"]


def is_valid_url(url: str) -> bool:
    """Basic http(s) URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def html_to_text(html: str) -> tuple[str, str]:
    """Return ``(title, readable_text)`` for an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(_NON_CONTENT_TAGS):
        tag.decompose()

    root = soup.find("main") or soup.find("article") or soup.body or soup
    text = root.get_text("\n", strip=True)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return title, text
