"""Tests for lead score decay (nexus/autonomous/decay.py).

Covers:
    - DecayScheduler.run_once: window check, one point per scan, zero floor
    - Per-contact failures counted, scan continues
    - Overlapping scans skipped
"""

from datetime import timedelta

from nexus.db.models import Activity, ActivityType

# ===========================================================================
# run_once
# ===========================================================================


class TestRunOnce:
    """One decay scan."""

    def test_inactive_contact_decays(self, runtime, make_contact, clock):
        contact = make_contact(lead_score=50)
        runtime.db.create_activity(
            Activity(
                contact_id=contact.id,
                type=ActivityType.NOTE,
                content="Old call",
                timestamp=clock.now() - timedelta(days=10),
            )
        )

        result = runtime.decay.run_once()

        assert result.scanned == 1
        assert result.decayed == 1
        assert result.errors == 0
        assert runtime.db.get_contact(contact.id).lead_score == 49

    def test_recent_activity_prevents_decay(self, runtime, make_contact, clock):
        contact = make_contact(lead_score=50)
        runtime.db.create_activity(
            Activity(
                contact_id=contact.id,
                type=ActivityType.NOTE,
                content="Called",
                timestamp=clock.now() - timedelta(days=2),
            )
        )

        result = runtime.decay.run_once()

        assert result.scanned == 1
        assert result.decayed == 0
        assert runtime.db.get_contact(contact.id).lead_score == 50

    def test_decay_activity_counts_as_activity(self, runtime, make_contact, clock):
        """The score_change written by a decay holds off the next one for a window."""
        contact = make_contact(lead_score=50)

        runtime.decay.run_once()
        clock.advance(timedelta(days=1))
        second = runtime.decay.run_once()
        clock.advance(timedelta(days=7))
        third = runtime.decay.run_once()

        assert second.decayed == 0
        assert third.decayed == 1
        assert runtime.db.get_contact(contact.id).lead_score == 48

    def test_zero_score_not_scanned(self, runtime, make_contact):
        make_contact(lead_score=0)
        result = runtime.decay.run_once()
        assert result.scanned == 0
        assert result.decayed == 0

    def test_failure_counted_and_scan_continues(self, runtime, make_contact, monkeypatch):
        broken = make_contact(name="Broken Contact", email="broken@example.com", lead_score=30)
        healthy = make_contact(name="Healthy Contact", email="healthy@example.com", lead_score=30)
        original = runtime.db.has_activity_since

        def flaky(contact_id, since):
            if contact_id == broken.id:
                raise RuntimeError("database is locked")
            return original(contact_id, since)

        monkeypatch.setattr(runtime.db, "has_activity_since", flaky)
        result = runtime.decay.run_once()

        assert result.scanned == 2
        assert result.errors == 1
        assert result.decayed == 1
        assert runtime.db.get_contact(healthy.id).lead_score == 29
        assert runtime.db.get_contact(broken.id).lead_score == 30

    def test_overlapping_scan_skipped(self, runtime, make_contact):
        make_contact(lead_score=50)
        runtime.decay._in_flight.acquire()
        try:
            result = runtime.decay.run_once()
        finally:
            runtime.decay._in_flight.release()

        assert result.skipped is True
        assert result.scanned == 0
