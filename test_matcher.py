#!/usr/bin/env python3
"""
Element Matcher Tests

Term matching rules, blacklist, clickability/visibility filters, the long
anchor guard and per-frame scanning against an in-memory page.
"""

from unveil.core.config import MatcherConfig
from unveil.core.matcher import (
    ElementDescriptor,
    ElementMatcher,
    MatchedElement,
    dedupe_by_text,
    is_blacklisted,
    normalize_text,
    term_matches,
)

from fake_session import FakeElement, FakeSession


def _button(text, **kw):
    data = {"tag": "button", "text": text, "tabIndex": 0, "display": "inline-block",
            "visibility": "visible", "opacity": 1, "left": 100, "top": 200, "width": 80, "height": 30}
    data.update(kw)
    return data


def test_normalize_text():
    print("🔍 Testing text normalization...")
    assert normalize_text("  OK,   Got it!  ") == "ok got it"
    assert normalize_text("Don’t show again") == "don't show again"
    assert normalize_text("No\nthanks…") == "no thanks"
    assert normalize_text("") == ""


def test_term_rules():
    print("🔍 Testing term rules...")
    matcher = ElementMatcher()

    assert set(matcher.matched_terms(normalize_text("OK, got it"))) >= {"ok", "got it"}
    assert "no thanks" in matcher.matched_terms(normalize_text("No thanks!"))
    # Short terms match whole tokens only
    assert matcher.matched_terms(normalize_text("Bookmark this")) == []
    assert matcher.matched_terms(normalize_text("no thanksgiving")) == []
    assert term_matches("okay then", "ok") is False
    assert term_matches("ok then", "ok") is True
    # Longer terms are word-bounded phrases
    assert term_matches("please close window", "close") is True
    assert term_matches("closed captions", "close") is False
    print("   ✓ Short and phrase terms behave as expected")


def test_blacklist_wins():
    matcher = ElementMatcher()
    assert is_blacklisted("Bookmark this", MatcherConfig().blacklist)
    assert matcher.match_descriptor(ElementDescriptor.from_dict(_button("Sign in or close"))) is None
    assert matcher.match_descriptor(ElementDescriptor.from_dict(_button("Close"))) is not None


def test_clickability_and_visibility():
    print("🔍 Testing clickability and visibility filters...")
    matcher = ElementMatcher()
    plain_div = {"tag": "div", "text": "Close", "tabIndex": -1, "left": 0, "top": 0, "width": 50, "height": 20}
    role_div = dict(plain_div, role="button")
    onclick_span = dict(plain_div, tag="span", onclick=True)
    tabbable_div = dict(plain_div, tabIndex=0)

    assert matcher.match_descriptors([plain_div]) == []
    assert len(matcher.match_descriptors([role_div])) == 1
    assert len(matcher.match_descriptors([onclick_span])) == 1
    assert len(matcher.match_descriptors([tabbable_div])) == 1

    assert matcher.match_descriptors([_button("Dismiss", display="none")]) == []
    assert matcher.match_descriptors([_button("Dismiss", visibility="hidden")]) == []
    assert matcher.match_descriptors([_button("Dismiss", opacity=0)]) == []
    assert matcher.match_descriptors([_button("Dismiss", width=0)]) == []
    assert len(matcher.match_descriptors([_button("Dismiss")])) == 1

    relaxed = ElementMatcher(MatcherConfig(require_visible=False))
    assert len(relaxed.match_descriptors([_button("Dismiss", display="none")])) == 1


def test_long_anchor_guard():
    print("🔍 Testing anchor length guard...")
    matcher = ElementMatcher()
    headline = "Close encounters: why the housing market stalled"
    assert len(headline) > 30
    anchor = {"tag": "a", "text": headline, "tabIndex": 0, "left": 0, "top": 0, "width": 300, "height": 20}
    assert matcher.match_descriptors([anchor]) == []

    short_anchor = dict(anchor, text="Close")
    assert len(matcher.match_descriptors([short_anchor])) == 1

    # Truncated text still reports the full length
    truncated = dict(anchor, text="Close", textLength=120)
    assert matcher.match_descriptors([truncated]) == []

    # Buttons are not subject to the guard
    assert len(matcher.match_descriptors([_button(headline)])) == 1


def test_coordinates_include_scroll():
    matcher = ElementMatcher()
    [match] = matcher.match_descriptors([_button("Close", scrollX=0, scrollY=500)])
    assert (match.x, match.y) == (140.0, 715.0)
    assert match.viewport_point() == (140.0, 215.0)


def test_dedupe_by_text():
    a = MatchedElement(tag="button", text="close", x=1, y=1)
    b = MatchedElement(tag="a", text="close", x=2, y=2)
    c = MatchedElement(tag="button", text="no thanks", x=3, y=3)
    unique = dedupe_by_text([a, b, c])
    assert unique == [a, c]


def test_scan_frames():
    print("🔍 Testing multi-frame scan...")
    session = FakeSession()
    session.add(FakeElement("button", "Close", left=20, top=20))
    session.add(FakeElement("button", "Dismiss", display="none"))
    session.add(FakeElement("a", "Close this window and read the full investigation", top=300))

    consent = session.add_frame("https://consent.example.net/", offset=(200.0, 400.0))
    session.add(FakeElement("button", "Reject all", left=10, top=10, width=100, height=40), frame=consent)
    session.add(FakeElement("button", "close", left=10, top=60), frame=consent)
    session.add_frame("https://ads.example.org/", blocked=True)

    matches = ElementMatcher().scan(session)
    assert [m.raw_text for m in matches] == ["Close", "Reject all"]

    inner = matches[1]
    assert inner.frame_index == 1
    assert inner.frame_url == "https://consent.example.net/"
    assert inner.viewport_point() == (260.0, 430.0)
    print(f"   ✓ {len(matches)} unique matches across frames")


def main():
    """Run all matcher tests."""
    print("🚀 Starting Element Matcher Tests\n")

    tests = [
        ("Normalization", test_normalize_text),
        ("Term Rules", test_term_rules),
        ("Blacklist", test_blacklist_wins),
        ("Clickability/Visibility", test_clickability_and_visibility),
        ("Anchor Guard", test_long_anchor_guard),
        ("Coordinates", test_coordinates_include_scroll),
        ("Dedupe", test_dedupe_by_text),
        ("Frame Scan", test_scan_frames),
    ]

    passed = 0
    for test_name, test_func in tests:
        try:
            test_func()
            passed += 1
            print(f"✅ {test_name} PASSED")
        except AssertionError as e:
            print(f"❌ {test_name} FAILED: {e}")

    print(f"\nTEST RESULTS: {passed}/{len(tests)} tests passed")
    return passed == len(tests)


if __name__ == "__main__":
    raise SystemExit(0 if main() else 1)
