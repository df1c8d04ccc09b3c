"""HTML-to-text conversion for message bodies that ship without a text/plain part."""

import re

from bs4 import BeautifulSoup


def html_to_text(html: str) -> str:
    """
    Convert an HTML email body to readable plain text.

    Script, style and head elements are dropped; blank-line runs collapse
    to a single empty line.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    text = soup.get_text(separator="\n")
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
