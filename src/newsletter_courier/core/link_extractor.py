"""Recover a newsletter's "view online" link from arbitrary email bodies.

Newsletters carry no machine-readable pointer to their web edition, so the
link is found with a fixed cascade of heuristics. Tiers run in order and the
first one that produces a URL wins:

1. custom   - the newsletter's own regex (exactly one capture group)
2. provider - known ESP markers plus that provider's link hosts
3. proximity - the hyperlink nearest to a "view in browser" style phrase
4. structural - anchors whose attributes, text or href use view/online words
5. fallback - any absolute URL, minus excluded hosts, keyword URLs first

The extractor holds only immutable rules, so calls are pure and repeatable.
"""

import html as html_lib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from newsletter_courier.core.entities import EmailMessage, Newsletter

logger = logging.getLogger(__name__)


class ExtractionTier(str, Enum):
    """Which heuristic produced a link."""

    CUSTOM = "custom"
    PROVIDER = "provider"
    PROXIMITY = "proximity"
    STRUCTURAL = "structural"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class LinkMatch:
    url: str
    tier: ExtractionTier


@dataclass(frozen=True)
class ProviderRule:
    """Markers identifying an ESP and the hosts its web-edition links live on."""

    name: str
    markers: tuple[str, ...]
    link_hosts: tuple[str, ...]
    anchor_text: str


# Words inside a phrase may be joined by whitespace, &nbsp;, pipes, bullets or arrows.
_SEP = r"(?:\s|&nbsp;|&#160;|[|•·»›→:\-])+"

VIEW_ONLINE_PHRASES: tuple[str, ...] = (
    rf"\bview(?:{_SEP}(?:this|the|it))?(?:{_SEP}(?:email|newsletter|issue|post|message))?"
    rf"{_SEP}(?:in|on){_SEP}(?:(?:a|your){_SEP})?(?:web{_SEP})?browser\b",
    rf"\b(?:read|open)(?:{_SEP}(?:this|it))?{_SEP}in{_SEP}(?:(?:a|your){_SEP})?(?:web{_SEP})?browser\b",
    rf"\b(?:view|read)(?:{_SEP}(?:this|it))?{_SEP}online\b",
    rf"\b(?:web|online|browser){_SEP}version\b",
    rf"\bversion{_SEP}(?:online|in{_SEP}(?:(?:a|your){_SEP})?browser)\b",
    rf"\bview{_SEP}(?:(?:it|this){_SEP})?as{_SEP}(?:a{_SEP})?web{_SEP}?page\b",
    rf"\btrouble{_SEP}(?:viewing|reading)(?:{_SEP}this{_SEP}(?:email|message))?",
    rf"\b(?:can['’]?t|cannot){_SEP}(?:see|view|read){_SEP}this{_SEP}(?:email|message)",
)

_VOCAB = r"(?:view|online|browser|web-?version|newsletter)"

STRUCTURAL_PATTERNS: tuple[str, ...] = (
    # Anchor attributes (title, aria-label, class, id, alt) use the vocabulary.
    rf"<a\b(?=[^>]*\b(?:title|aria-label|class|id|alt)\s*=\s*[\"'][^\"']*{_VOCAB}[^\"']*[\"'])"
    r"[^>]*?\bhref\s*=\s*[\"'](https?://[^\"']+)[\"']",
    # Anchor text uses the vocabulary.
    r"<a\b[^>]*?\bhref\s*=\s*[\"'](https?://[^\"']+)[\"'][^>]*>"
    r"(?:(?!</a).){0,300}?\b(?:view|online|browser|web\s+version|newsletter)\b",
    # The href itself looks like a web edition.
    r"<a\b[^>]*?\bhref\s*=\s*[\"'](https?://[^\"']*"
    r"(?:newsletter|campaign|archive|view|browser|online)[^\"']*)[\"']",
)

DEFAULT_PROVIDERS: tuple[ProviderRule, ...] = (
    ProviderRule(
        name="beehiiv",
        markers=("beehiiv",),
        link_hosts=("beehiiv.com",),
        anchor_text=r"read\s+online|view\s+online|view\s+in\s+(?:your\s+)?browser",
    ),
    ProviderRule(
        name="substack",
        markers=("substack.com", "substackcdn.com"),
        link_hosts=("substack.com",),
        anchor_text=r"view\s+in\s+browser|open\s+in\s+browser|read\s+(?:online|in\s+(?:the\s+)?app)",
    ),
    ProviderRule(
        name="mailchimp",
        markers=("list-manage.com", "mailchi.mp", "campaign-archive.com"),
        link_hosts=("mailchi.mp", "campaign-archive.com", "list-manage.com"),
        anchor_text=r"view\s+this\s+email\s+in\s+your\s+browser|view\s+in\s+browser|web\s+version",
    ),
    ProviderRule(
        name="convertkit",
        markers=("convertkit", "ck.page"),
        link_hosts=("ck.page", "convertkit.com", "convertkit-mail.com", "convertkit-mail2.com"),
        anchor_text=r"view\s+(?:this\s+email\s+)?in\s+(?:your\s+)?browser|view\s+online",
    ),
    ProviderRule(
        name="buttondown",
        markers=("buttondown.email", "buttondown.com"),
        link_hosts=("buttondown.email", "buttondown.com"),
        anchor_text=r"view\s+(?:it\s+)?(?:in\s+(?:your\s+)?browser|online)|read\s+online",
    ),
)


@dataclass(frozen=True)
class ExtractionRules:
    """Heuristic data. Keyword and host lists are deployment-tunable."""

    providers: tuple[ProviderRule, ...] = DEFAULT_PROVIDERS
    view_online_phrases: tuple[str, ...] = VIEW_ONLINE_PHRASES
    structural_patterns: tuple[str, ...] = STRUCTURAL_PATTERNS
    proximity_window: int = 400
    fallback_keywords: tuple[str, ...] = ("newsletter", "view", "browser", "online")
    esp_keywords: tuple[str, ...] = (
        "beehiiv",
        "substack",
        "mailchi.mp",
        "campaign-archive",
        "convertkit",
        "buttondown",
    )
    excluded_domains: tuple[str, ...] = (
        "w3.org",
        "w3schools.com",
        "xmlns.com",
        "schema.org",
        "purl.org",
        "google-analytics.com",
        "googletagmanager.com",
        "doubleclick.net",
    )


DEFAULT_RULES = ExtractionRules()

ANCHOR_RE = re.compile(
    r"<a\b[^>]*?\bhref\s*=\s*([\"'])(.*?)\1[^>]*>(.*?)</a\s*>",
    re.IGNORECASE | re.DOTALL,
)
MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
BARE_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
TRAILING_PUNCT = ".,;:!?)]}"


@dataclass(frozen=True)
class _Link:
    start: int
    end: int
    url: str
    text: str


def _host_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def _host_matches(url: str, domains: tuple[str, ...]) -> bool:
    host = _host_of(url)
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def _clean_bare_url(url: str) -> str:
    return url.rstrip(TRAILING_PUNCT)


def _markup_links(content: str) -> list[_Link]:
    """HTML anchors and markdown links with absolute http(s) targets."""
    links = []
    for match in ANCHOR_RE.finditer(content):
        url = html_lib.unescape(match.group(2).strip())
        if url.lower().startswith(("http://", "https://")):
            text = BeautifulSoup(match.group(3), "html.parser").get_text(" ", strip=True)
            links.append(_Link(match.start(), match.end(), url, " ".join(text.split())))
    for match in MARKDOWN_LINK_RE.finditer(content):
        links.append(_Link(match.start(), match.end(), match.group(2), match.group(1)))
    links.sort(key=lambda link: link.start)
    return links


def _bare_links(content: str, is_html: bool = False) -> list[_Link]:
    """Every absolute URL; the link text is the line it sits on."""
    links = []
    for match in BARE_URL_RE.finditer(content):
        raw = _clean_bare_url(match.group(0))
        url = html_lib.unescape(raw) if is_html else raw
        line_start = content.rfind("\n", 0, match.start()) + 1
        line_end = content.find("\n", match.end())
        line = content[line_start : line_end if line_end != -1 else len(content)]
        links.append(_Link(match.start(), match.start() + len(raw), url, line.strip()))
    return links


def _gap(link: _Link, start: int, end: int) -> int:
    if link.end <= start:
        return start - link.end
    if link.start >= end:
        return link.start - end
    return 0


class LinkExtractor:
    """Find the single most likely web-edition URL of a newsletter email."""

    def __init__(self, rules: ExtractionRules = DEFAULT_RULES) -> None:
        self.rules = rules
        self._phrases = [re.compile(p, re.IGNORECASE) for p in rules.view_online_phrases]
        self._structural = [
            re.compile(p, re.IGNORECASE | re.DOTALL) for p in rules.structural_patterns
        ]
        self._provider_text = {
            rule.name: re.compile(rule.anchor_text, re.IGNORECASE) for rule in rules.providers
        }

    def extract(
        self,
        html: Optional[str],
        text: Optional[str],
        extraction_pattern: Optional[str] = None,
        newsletter_name: Optional[str] = None,
    ) -> Optional[str]:
        match = self.find(html, text, extraction_pattern, newsletter_name)
        return match.url if match else None

    def extract_from_email(self, email: EmailMessage, newsletter: Newsletter) -> Optional[str]:
        return self.extract(email.html, email.text, newsletter.extraction_pattern, newsletter.name)

    def find(
        self,
        html: Optional[str],
        text: Optional[str],
        extraction_pattern: Optional[str] = None,
        newsletter_name: Optional[str] = None,
    ) -> Optional[LinkMatch]:
        """Run the tiers in order and report which one found the link."""
        if not html and not text:
            return None

        primary = html or text or ""
        # (body, is_html) pairs, HTML first
        contents = [(body, is_html) for body, is_html in ((html, True), (text, False)) if body]

        if extraction_pattern:
            url = self._match_custom(extraction_pattern, primary)
            if url:
                return self._found(url, ExtractionTier.CUSTOM)

        for content, is_html in contents:
            url = self._match_provider(content, is_html)
            if url:
                return self._found(url, ExtractionTier.PROVIDER)

        for content, is_html in contents:
            url = self._match_proximity(content, is_html)
            if url:
                return self._found(url, ExtractionTier.PROXIMITY)

        for content, _ in contents:
            url = self._match_structural(content)
            if url:
                return self._found(url, ExtractionTier.STRUCTURAL)

        url = self._match_fallback(primary, from_html=bool(html), newsletter_name=newsletter_name)
        if url:
            return self._found(url, ExtractionTier.FALLBACK)

        logger.debug("No URL found in email content")
        return None

    def _found(self, url: str, tier: ExtractionTier) -> LinkMatch:
        logger.debug("Found URL via %s tier: %s", tier.value, url)
        return LinkMatch(url=url, tier=tier)

    def _match_custom(self, pattern: str, content: str) -> Optional[str]:
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            logger.warning("Ignoring invalid extraction pattern %r: %s", pattern, e)
            return None

        if compiled.groups != 1:
            logger.warning(
                "Ignoring extraction pattern %r: expected 1 capture group, got %d",
                pattern,
                compiled.groups,
            )
            return None

        match = compiled.search(content)
        if match and match.group(1):
            return match.group(1)

        logger.debug("Custom pattern did not match")
        return None

    def _match_provider(self, content: str, is_html: bool = False) -> Optional[str]:
        lowered = content.lower()
        links: Optional[list[_Link]] = None

        for rule in self.rules.providers:
            if not any(marker in lowered for marker in rule.markers):
                continue

            if links is None:
                links = _markup_links(content) or _bare_links(content, is_html)

            candidates = [link for link in links if _host_matches(link.url, rule.link_hosts)]
            if not candidates:
                continue

            anchor_text = self._provider_text[rule.name]
            for link in candidates:
                if anchor_text.search(link.text):
                    return link.url
            return candidates[0].url

        return None

    def _match_proximity(self, content: str, is_html: bool = False) -> Optional[str]:
        window = self.rules.proximity_window
        markup: Optional[list[_Link]] = None
        bare: Optional[list[_Link]] = None

        for phrase in self._phrases:
            for match in phrase.finditer(content):
                if markup is None:
                    markup = _markup_links(content)
                    bare = _bare_links(content, is_html)

                center = (match.start() + match.end()) // 2
                low, high = center - window, center + window

                for pool in (markup, bare):
                    nearby = [link for link in pool if link.end >= low and link.start <= high]
                    if nearby:
                        nearest = min(nearby, key=lambda link: _gap(link, match.start(), match.end()))
                        return nearest.url

        return None

    def _match_structural(self, content: str) -> Optional[str]:
        for pattern in self._structural:
            match = pattern.search(content)
            if match:
                return html_lib.unescape(match.group(1))
        return None

    def _match_fallback(
        self, content: str, from_html: bool, newsletter_name: Optional[str]
    ) -> Optional[str]:
        urls = [_clean_bare_url(m.group(0)) for m in BARE_URL_RE.finditer(content)]
        if from_html:
            urls = [html_lib.unescape(url) for url in urls]
        urls = [url for url in urls if _host_of(url)]
        if not urls:
            return None

        kept = [url for url in urls if not _host_matches(url, self.rules.excluded_domains)]

        keywords = list(self.rules.fallback_keywords) + list(self.rules.esp_keywords)
        if newsletter_name and newsletter_name.split():
            keywords.insert(0, newsletter_name.split()[0].lower())

        for url in kept:
            lowered = url.lower()
            if any(keyword in lowered for keyword in keywords):
                return url

        if kept:
            return kept[0]
        return urls[0]


_default_extractor = LinkExtractor()


def extract_web_url(
    html: Optional[str],
    text: Optional[str],
    extraction_pattern: Optional[str] = None,
    newsletter_name: Optional[str] = None,
) -> Optional[str]:
    """Module-level shortcut using the default rules."""
    return _default_extractor.extract(html, text, extraction_pattern, newsletter_name)
