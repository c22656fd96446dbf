from examwatch.sticky import StickyState


def test_grace_window_boundaries():
    sticky = StickyState(grace_seconds=60.0)
    assert sticky.observe(("webrtc", 42), True, now=1000.0)
    assert sticky.observe(("webrtc", 42), False, now=1030.0)
    assert not sticky.observe(("webrtc", 42), False, now=1061.0)


def test_expiry_is_exclusive():
    sticky = StickyState(grace_seconds=60.0)
    sticky.mark("k", now=0.0)
    assert sticky.is_active("k", now=59.999)
    assert not sticky.is_active("k", now=60.0)


def test_positive_evidence_refreshes_record():
    sticky = StickyState(grace_seconds=60.0)
    sticky.observe("k", True, now=0.0)
    sticky.observe("k", True, now=50.0)
    assert sticky.observe("k", False, now=100.0)
    assert sticky.records["k"].last_seen_at == 50.0


def test_unknown_subject_is_inactive():
    assert not StickyState().observe("never-seen", False, now=5.0)


def test_expired_records_stay_until_pruned():
    sticky = StickyState(grace_seconds=10.0)
    sticky.mark("a", now=0.0)
    sticky.mark("b", now=15.0)
    assert not sticky.is_active("a", now=20.0)
    assert len(sticky) == 2

    assert sticky.prune(now=20.0) == 1
    assert list(sticky.records) == ["b"]


def test_uses_injected_clock():
    now = [100.0]
    sticky = StickyState(grace_seconds=5.0, clock=lambda: now[0])
    sticky.mark("k")
    now[0] = 104.0
    assert sticky.is_active("k")
    now[0] = 105.0
    assert not sticky.is_active("k")
