"""
Archiver Configuration

Term lists, blacklists, selector allowlists and timing constants used by the
matcher, executor, sanitizer and capture components. Every component takes
its configuration as a constructor argument; nothing here is read as ambient
state. A JSON profile can replace or extend any of the defaults.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse


logger = logging.getLogger(__name__)


DEFAULT_SEARCH_TERMS = [
    "cancel",
    "close",
    "dismiss",
    "reject",
    "decline",
    "no thanks",
    "no, thanks",
    "ok",
    "got it",
    "not now",
    "maybe later",
    "reject all",
    "continue without accepting",
]

DEFAULT_BLACKLIST = [
    "sign in",
    "sign up",
    "log in",
    "subscribe now",
    "bookmark",
    "download",
    "share",
]

DEFAULT_EXPANSION_TERMS = [
    "read more",
    "show more",
    "continue reading",
    "show full article",
    "load more",
    "view more",
    "see more",
]

DEFAULT_CLOSE_SELECTORS = [
    '[id*="close" i]',
    '[class*="close" i]',
    '[aria-label*="close" i]',
]

DEFAULT_AD_SELECTORS = [
    '[id^="google_ads"]',
    '[id^="div-gpt-ad"]',
    'ins.adsbygoogle',
    '.adsbygoogle',
    '[class*="ad-wrapper"]',
    '[class*="ad-container"]',
    '[class*="ad-slot"]',
    '[id*="taboola"]',
    '[class*="taboola"]',
    '[id*="outbrain"]',
    '[class*="OUTBRAIN"]',
    'iframe[src*="doubleclick.net"]',
    'iframe[src*="googlesyndication"]',
    'script[src*="googletagmanager"]',
    'script[src*="google-analytics"]',
    'script[src*="doubleclick"]',
    'script[src*="googlesyndication"]',
]

STAGE_DISMISS = "dismiss_overlays"
STAGE_REMOVE_ADS = "remove_ads"
STAGE_LAZY_LOAD = "lazy_load"
STAGE_EXPAND = "expand_content"
STAGE_FIX_LAYOUT = "fix_layout"

DEFAULT_STAGES = [
    STAGE_DISMISS,
    STAGE_REMOVE_ADS,
    STAGE_LAZY_LOAD,
    STAGE_EXPAND,
    STAGE_FIX_LAYOUT,
]
KNOWN_STAGES = frozenset(DEFAULT_STAGES)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--no-zygote",
    "--disable-gpu",
]


@dataclass
class KnownOverlay:
    """A named overlay widget with an optional polite dismiss control.

    ``container`` and ``dismiss`` are CSS selectors. When ``dismiss`` is
    empty the widget is removed and blocked straight away.
    """

    name: str
    container: str
    dismiss: Optional[str] = None
    block: bool = True


DEFAULT_KNOWN_OVERLAYS = [
    KnownOverlay("notification-slidedown", "#onesignal-slidedown-container", "#onesignal-slidedown-cancel-button"),
    KnownOverlay("notification-bell", "#onesignal-bell-container"),
    KnownOverlay("consent-onetrust", "#onetrust-banner-sdk",
                 "#onetrust-reject-all-handler, .onetrust-close-btn-handler"),
    KnownOverlay("consent-cookiebot", "#CybotCookiebotDialog", "#CybotCookiebotDialogBodyButtonDecline"),
    KnownOverlay("sticky-bottom-bar",
                 '[class*="sticky-footer"], [id*="sticky-footer"], [class*="bottom-sticky"]',
                 '[class*="close" i], [aria-label*="close" i]'),
    KnownOverlay("floating-badge", '[class*="floating-badge"], [id*="floating-badge"]'),
]


@dataclass
class MatcherConfig:
    search_terms: List[str] = field(default_factory=lambda: list(DEFAULT_SEARCH_TERMS))
    blacklist: List[str] = field(default_factory=lambda: list(DEFAULT_BLACKLIST))
    interactive_tags: Tuple[str, ...] = ("button", "a", "input")
    # Terms up to this length match whole tokens only ("ok" must not hit "book")
    short_term_max_length: int = 3
    # Longer anchor texts are headlines/article links, not close controls
    anchor_max_length: int = 30
    max_text_length: int = 300
    require_visible: bool = True


@dataclass
class ExecutorConfig:
    click_delay_ms: int = 100
    press_delay_ms: Tuple[int, int] = (30, 60)
    move_steps: int = 5
    nav_lock_settle_ms: int = 600
    max_passes: int = 5
    overlay_wait_ms: int = 1500
    poll_interval_ms: int = 100
    frame_budget_ms: int = 1500
    action_timeout_ms: int = 3000
    close_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_CLOSE_SELECTORS))
    close_max_text_length: int = 30
    expansion_terms: List[str] = field(default_factory=lambda: list(DEFAULT_EXPANSION_TERMS))
    expansion_wait_ms: int = 1500
    content_block_selector: str = "p"


@dataclass
class SanitizerConfig:
    stages: List[str] = field(default_factory=lambda: list(DEFAULT_STAGES))
    known_overlays: List[KnownOverlay] = field(default_factory=lambda: list(DEFAULT_KNOWN_OVERLAYS))
    ad_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_AD_SELECTORS))
    close_sweep: bool = True
    lazy_pause_ms: int = 300
    lazy_max_steps: int = 120
    lazy_settle_ms: int = 1000

    def __post_init__(self):
        unknown = [s for s in self.stages if s not in KNOWN_STAGES]
        if unknown:
            raise ValueError(f"Unknown sanitizer stage(s): {', '.join(unknown)}")


@dataclass
class CaptureConfig:
    pdf_format: str = "A4"
    print_background: bool = True
    pdf_margin: Dict[str, str] = field(default_factory=lambda: {
        "top": "0.4in", "right": "0.4in", "bottom": "0.4in", "left": "0.4in",
    })
    emulate_print: bool = True
    network_idle_timeout_ms: int = 10000
    pre_pdf_settle_ms: int = 400
    inject_nav_guard: bool = True


@dataclass
class BrowserConfig:
    headless: bool = True
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1440, "height": 900})
    device_scale_factor: float = 1.0
    user_agent: str = DEFAULT_USER_AGENT
    extra_headers: Dict[str, str] = field(default_factory=dict)
    launch_args: List[str] = field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))
    wait_until: str = "networkidle"
    fallback_wait_until: str = "domcontentloaded"
    # 0 = wait indefinitely; the controller's job watchdog bounds it
    navigation_timeout_ms: int = 0
    fallback_timeout_ms: int = 15000
    post_load_settle_ms: int = 800
    default_timeout_ms: int = 30000
    fail_on_http_error: bool = True
    auto_dismiss_dialogs: bool = True


@dataclass
class Profile:
    """Complete configuration bundle for one archival run."""

    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    sanitizer: SanitizerConfig = field(default_factory=SanitizerConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    site_fixes: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def expansion_matcher(self) -> MatcherConfig:
        """Matcher configuration for 'read more'/'load more' controls."""
        return replace(self.matcher, search_terms=list(self.executor.expansion_terms))

    def for_url(self, url: str) -> "Profile":
        """
        Return the profile with any per-host fixes applied.

        A site fix is keyed by host (``www.`` stripped); it may add
        ``known_overlays`` and ``ad_selectors`` on top of the defaults.
        """
        host = (urlparse(url).hostname or "").lower()
        if host.startswith("www."):
            host = host[4:]
        fix = None
        for key, value in self.site_fixes.items():
            k = key.lower()
            if host == k or host.endswith("." + k):
                fix = value
                break
        if not fix:
            return self

        overlays = list(self.sanitizer.known_overlays)
        overlays.extend(_overlay_from_dict(o) for o in fix.get("known_overlays", []))
        ads = list(self.sanitizer.ad_selectors) + list(fix.get("ad_selectors", []))
        logger.debug(f"Applying site fixes for {host}: {len(overlays)} overlays, {len(ads)} ad selectors")
        return replace(self, sanitizer=replace(self.sanitizer, known_overlays=overlays, ad_selectors=ads))


def _overlay_from_dict(data: Dict[str, Any]) -> KnownOverlay:
    if isinstance(data, KnownOverlay):
        return data
    try:
        return KnownOverlay(**data)
    except TypeError as e:
        raise ValueError(f"Invalid known overlay entry {data!r}: {e}")


def _apply(section, data: Dict[str, Any], name: str):
    allowed = {f.name for f in fields(section)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown key(s) in profile section '{name}': {', '.join(sorted(unknown))}")
    values = dict(data)
    for key, value in values.items():
        if isinstance(getattr(section, key), tuple) and isinstance(value, list):
            values[key] = tuple(value)
    if "known_overlays" in values:
        values["known_overlays"] = [_overlay_from_dict(o) for o in values["known_overlays"]]
    return replace(section, **values)


def profile_from_dict(data: Dict[str, Any]) -> Profile:
    """
    Build a Profile from a plain dictionary (e.g. parsed JSON).

    Top-level keys are ``matcher``, ``executor``, ``sanitizer``, ``capture``,
    ``browser``, ``site_fixes`` and, as a shortcut, ``known_overlays``.

    Raises:
        ValueError: on unknown keys or invalid stage names
    """
    profile = Profile()
    allowed = {"matcher", "executor", "sanitizer", "capture", "browser", "site_fixes", "known_overlays"}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown profile section(s): {', '.join(sorted(unknown))}")

    for name in ("matcher", "executor", "sanitizer", "capture", "browser"):
        if name in data:
            profile = replace(profile, **{name: _apply(getattr(profile, name), data[name], name)})
    if "known_overlays" in data:
        overlays = [_overlay_from_dict(o) for o in data["known_overlays"]]
        profile = replace(profile, sanitizer=replace(profile.sanitizer, known_overlays=overlays))
    if "site_fixes" in data:
        profile = replace(profile, site_fixes=dict(data["site_fixes"]))
    return profile


def load_profile(path: Optional[str]) -> Profile:
    """Load a JSON profile from disk; ``None`` returns the defaults."""
    if not path:
        return Profile()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Profile JSON root must be an object")
    logger.info(f"Loaded profile: {path}")
    return profile_from_dict(data)
