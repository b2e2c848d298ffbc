"""
Offline-only detection from a jurisdiction's permit page.

Runs before any oracle tier: it is free, and a confident "offline" verdict
means the expensive tiers never need to be asked.

Scoring (only reached when no vendor link and no online-submission phrase):
    0.4  if more than half the links are PDFs
    0.4  if more than two offline-language phrases appear
    0.2  if every link is a PDF
    0.2  if there are no non-PDF links at all
Offline when the score is at least 0.5.
"""

from __future__ import annotations

from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .models import OfflineVerdict, PageLink
from .vendors import OFFLINE_PHRASES, OFFLINE_VENDOR_PATTERNS, ONLINE_SUBMISSION_PHRASES

OFFLINE_THRESHOLD = 0.5

_NOT_OFFLINE = OfflineVerdict(offline=False, confidence=0.0)


def classify_offline(text: str | None, links: list[PageLink] | None) -> OfflineVerdict:
    """Score page text and outbound links for "PDF/paper process only"."""
    if text is None or links is None:
        return _NOT_OFFLINE.model_copy()

    lower = text.lower()
    pdf_links = [link for link in links if is_pdf_url(link.url)]
    non_pdf_links = [link for link in links if not is_pdf_url(link.url)]

    # A live vendor system means the jurisdiction is not offline-only.
    for link in non_pdf_links:
        url = link.url.lower()
        if any(pattern in url for pattern in OFFLINE_VENDOR_PATTERNS):
            return _NOT_OFFLINE.model_copy()

    if any(phrase in lower for phrase in ONLINE_SUBMISSION_PHRASES):
        return _NOT_OFFLINE.model_copy()

    pdf_ratio = len(pdf_links) / len(links) if links else 0.0
    offline_hits = sum(1 for phrase in OFFLINE_PHRASES if phrase in lower)

    score = 0.0
    if pdf_ratio > 0.5:
        score += 0.4
    if offline_hits > 2:
        score += 0.4
    if pdf_ratio == 1:
        score += 0.2
    if not non_pdf_links:
        score += 0.2

    score = round(min(score, 1.0), 2)
    return OfflineVerdict(offline=score >= OFFLINE_THRESHOLD, confidence=score)


def extract_links(html: str, base_url: str = "") -> list[PageLink]:
    """Absolute outbound links of an HTML page, with their anchor text."""
    soup = BeautifulSoup(html, "html.parser")

    links: list[PageLink] = []
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        links.append(
            PageLink(
                url=urljoin(base_url, href) if base_url else href,
                text=anchor.get_text(" ", strip=True),
            )
        )

    return links


def is_pdf_url(url: str) -> bool:
    return url.lower().split("#", 1)[0].split("?", 1)[0].endswith(".pdf")
