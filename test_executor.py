#!/usr/bin/env python3
"""
Dismissal Executor Tests

Single-shot passes, navigation lock, off-screen targets, known overlays, the
close-button sweep and content expansion, all against the in-memory page.
"""

import time

from unveil.core.config import ExecutorConfig, KnownOverlay, Profile
from unveil.core.executor import (
    OUTCOME_ABSENT,
    OUTCOME_DISMISSED,
    OUTCOME_FAILED,
    OUTCOME_REMOVED,
    DismissalExecutor,
)
from unveil.core.matcher import ElementMatcher
from unveil.utils.polling import CancelToken

from fake_session import FakeElement, FakeOverlay, FakeSession, remove_on_click


FAST = ExecutorConfig(nav_lock_settle_ms=0, click_delay_ms=0, overlay_wait_ms=200, poll_interval_ms=20)


def test_dismiss_pass_clicks_one_match_per_pass():
    print("🔍 Testing dismissal passes...")
    session = FakeSession()
    close = session.add(FakeElement("button", "Close", left=10, top=10, on_click=remove_on_click))
    no_thanks = session.add(FakeElement("button", "No thanks!", left=200, top=10, on_click=remove_on_click))
    session.add(FakeElement("button", "Subscribe", left=400, top=10))

    report = DismissalExecutor(FAST).dismiss_pass(session, ElementMatcher())

    assert report.passes == 2
    assert [m.raw_text for m in report.clicked] == ["Close", "No thanks!"]
    assert close.clicks == 1 and no_thanks.clicks == 1
    assert session.nav_locks == 0
    print(f"   ✓ {report.passes} passes, {len(report.clicked)} clicks")


def test_stubborn_element_is_clicked_once():
    session = FakeSession()
    stubborn = session.add(FakeElement("button", "Dismiss"))

    report = DismissalExecutor(FAST).dismiss_pass(session, ElementMatcher())

    assert report.passes == 1
    assert stubborn.clicks == 1


def test_second_close_with_same_text_is_clicked():
    """A newsletter "Close" that appears after the cookie "Close" is dismissed too."""
    session = FakeSession()

    def open_newsletter(s, element):
        s.remove(element)
        s.add(FakeElement("button", "Close", left=600, top=400, on_click=remove_on_click))

    cookie = session.add(FakeElement("button", "Close", left=20, top=820, on_click=open_newsletter))
    report = DismissalExecutor(FAST).dismiss_pass(session, ElementMatcher())

    assert report.passes == 2
    assert [m.raw_text for m in report.clicked] == ["Close", "Close"]
    assert cookie.clicks == 1
    assert session.main.elements == []


def test_pass_limit():
    session = FakeSession()
    for i, text in enumerate(["Close", "Dismiss", "Not now", "Maybe later"]):
        session.add(FakeElement("button", text, left=10 + 100 * i, top=10))

    config = ExecutorConfig(nav_lock_settle_ms=0, click_delay_ms=0, max_passes=2)
    report = DismissalExecutor(config).dismiss_pass(session, ElementMatcher())
    assert report.passes == 2
    assert len(report.clicked) == 2


def test_navigation_lock_restores_page():
    print("🔍 Testing navigation lock...")
    session = FakeSession(url="https://example.com/news/story")

    def follow_link(s, element):
        s.navigate_away("https://ads.example.net/landing")

    session.add(FakeElement("a", "Close", on_click=follow_link))
    DismissalExecutor(FAST).dismiss_pass(session, ElementMatcher())

    assert session.url == "https://example.com/news/story"
    assert ("go_back", "https://example.com/news/story") in session.events
    assert session.nav_locks == 0
    print("   ✓ Navigation undone after click")


def test_offscreen_match_is_scrolled_into_view():
    session = FakeSession()
    target = session.add(FakeElement("button", "Close", left=10, top=2000, on_click=remove_on_click))

    assert DismissalExecutor(FAST).click_match(session, ElementMatcher().scan(session)[0]) is True
    assert target.clicks == 1
    assert session.scroll_y > 0
    click = [e for e in session.events if e[0] == "click"][-1]
    assert 0 <= click[2] <= session.viewport[1]


def test_frame_match_uses_frame_offset():
    session = FakeSession()
    frame = session.add_frame("https://consent.example.net/", offset=(300.0, 200.0))
    button = session.add(FakeElement("button", "Reject all", left=0, top=0, width=100, height=40,
                                     on_click=remove_on_click), frame=frame)

    report = DismissalExecutor(FAST).dismiss_pass(session, ElementMatcher())
    assert report.clicked and report.clicked[0].frame_index == 1
    assert button.clicks == 1
    assert ("click", 350, 220) in session.events


def test_known_overlay_outcomes():
    print("🔍 Testing known overlay dismissal...")
    executor = DismissalExecutor(FAST)
    polite = KnownOverlay("consent", "#consent", "#consent .reject")
    stubborn = KnownOverlay("promo", "#promo", "#promo .close")
    bell = KnownOverlay("bell", "#bell")
    keep = KnownOverlay("survey", "#survey", "#survey .no", block=False)

    session = FakeSession()
    session.overlays["#consent"] = FakeOverlay("#consent", dismiss_works=True)
    session.overlays["#promo"] = FakeOverlay("#promo", dismiss_works=False, point=(600.0, 500.0))
    session.overlays["#bell"] = FakeOverlay("#bell")
    session.overlays["#survey"] = FakeOverlay("#survey", dismiss_works=False, point=(100.0, 100.0))

    outcomes = executor.dismiss_overlays(session, [polite, stubborn, bell, keep,
                                                   KnownOverlay("gone", "#gone")])

    assert outcomes == {
        "consent": OUTCOME_DISMISSED,
        "promo": OUTCOME_REMOVED,
        "bell": OUTCOME_REMOVED,
        "survey": OUTCOME_FAILED,
        "gone": OUTCOME_ABSENT,
    }
    assert ("blocked", "promo") in session.events
    assert ("blocked", "consent") not in session.events
    assert "#survey" in session.overlays
    print(f"   ✓ Outcomes: {outcomes}")


def test_close_sweep_click_strategies():
    print("🔍 Testing close-button sweep...")
    executor = DismissalExecutor(FAST)

    session = FakeSession()
    assert executor.close_button_sweep(session) is False

    session.close_hit = {"tag": "button", "label": "Close"}
    session.close_box = {"x": 900, "y": 40, "width": 20, "height": 20}
    assert executor.close_button_sweep(session) is True
    assert ("click", 910, 50) in session.events

    # No box: falls back to the element click
    session = FakeSession()
    session.close_hit = {"tag": "span", "label": "close"}
    assert executor.close_button_sweep(session) is True
    assert ("locator_click", "[data-unveil-close]") in session.events


def test_close_sweep_frame_budget():
    print("🔍 Testing per-frame sweep budget...")
    config = ExecutorConfig(nav_lock_settle_ms=0, click_delay_ms=0, frame_budget_ms=50)

    session = FakeSession()
    session.main.latency_ms = 5000
    session.close_hit = {"tag": "button", "label": "Close"}
    gone = session.add_frame("https://gone.example.net/")
    gone.detached = True
    gone.close_hit = {"tag": "button", "label": "Close"}
    consent = session.add_frame("https://consent.example.net/", offset=(300.0, 200.0))
    consent.close_hit = {"tag": "button", "label": "Close"}
    session.close_box = {"x": 320, "y": 210, "width": 20, "height": 20}

    started = time.monotonic()
    assert DismissalExecutor(config).close_button_sweep(session) is True
    assert time.monotonic() - started < 1.0

    # The slow main document is cut off, the detached frame never evaluated
    swept = [e[1] for e in session.events if e[0] == "bounded"]
    assert swept == ["https://example.com/news/story", "https://consent.example.net/"]
    assert ("click", 330, 220) in session.events

    # Nothing answers in time: no click
    session = FakeSession()
    session.main.latency_ms = 5000
    session.close_hit = {"tag": "button", "label": "Close"}
    assert DismissalExecutor(config).close_button_sweep(session) is False
    assert not [e for e in session.events if e[0] == "click"]
    print("   ✓ Slow and detached frames skipped within budget")


def test_expand_content_verifies_growth():
    print("🔍 Testing content expansion...")
    profile = Profile()
    matcher = ElementMatcher(profile.expansion_matcher())
    executor = DismissalExecutor(FAST)

    session = FakeSession()

    def load_rest(s, element):
        s.paragraphs += 5
        s.remove(element)

    session.add(FakeElement("button", "Read more", top=1200, on_click=load_rest))
    result = executor.expand_content(session, matcher)
    assert result.clicked == "Read more"
    assert (result.before, result.after) == (3, 8)
    assert result.verified

    # Clicked but nothing new appeared
    session = FakeSession()
    session.add(FakeElement("button", "Show more"))
    result = executor.expand_content(session, matcher)
    assert result.clicked == "Show more"
    assert not result.verified

    # Nothing to expand
    result = executor.expand_content(FakeSession(), matcher)
    assert result.clicked is None and result.before == result.after
    print("   ✓ Expansion verified by block count")


def test_cancelled_executor_stops_passes():
    token = CancelToken()
    token.cancel()
    session = FakeSession()
    button = session.add(FakeElement("button", "Close"))
    report = DismissalExecutor(FAST, cancel=token).dismiss_pass(session, ElementMatcher())
    assert report.passes == 0
    assert button.clicks == 0


def main():
    """Run all executor tests."""
    print("🚀 Starting Dismissal Executor Tests\n")

    tests = [
        ("Dismissal Passes", test_dismiss_pass_clicks_one_match_per_pass),
        ("Stubborn Element", test_stubborn_element_is_clicked_once),
        ("Repeated Close Text", test_second_close_with_same_text_is_clicked),
        ("Pass Limit", test_pass_limit),
        ("Navigation Lock", test_navigation_lock_restores_page),
        ("Off-screen Target", test_offscreen_match_is_scrolled_into_view),
        ("Frame Offset", test_frame_match_uses_frame_offset),
        ("Known Overlays", test_known_overlay_outcomes),
        ("Close Sweep", test_close_sweep_click_strategies),
        ("Frame Budget", test_close_sweep_frame_budget),
        ("Expansion", test_expand_content_verifies_growth),
        ("Cancellation", test_cancelled_executor_stops_passes),
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
