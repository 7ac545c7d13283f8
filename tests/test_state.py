"""
Tests for the session state tracker: room membership, encryption and
device trust records.
"""

import threading

import pytest

from headjack.core.events import normalize
from headjack.core.state import Membership, TrustState

from tests.factories import ALICE, BOB, BOT_USER, encryption, invite, membership, message

ROOM = "!room:example.org"


def apply(tracker, raw):
    return tracker.apply(normalize(raw))


class TestRoomMembership:
    """Test the Unseen -> Invited -> Joined -> Left lifecycle."""

    def test_invite_then_join(self, tracker, session):
        change = apply(tracker, invite(ROOM, inviter=ALICE))
        assert change.previous == Membership.UNSEEN
        assert change.current == Membership.INVITED
        assert change.inviter == ALICE
        assert not session.is_joined(ROOM)

        change = apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        assert change.previous == Membership.INVITED
        assert change.current == Membership.JOINED
        assert session.is_joined(ROOM)
        assert tracker.snapshot_room(ROOM).membership == Membership.JOINED

    def test_joined_iff_in_session(self, tracker, session):
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        assert ROOM in tracker.joined_rooms()
        apply(tracker, membership(ROOM, "leave", target=BOT_USER, sender=BOT_USER))
        assert ROOM not in tracker.joined_rooms()
        assert ROOM not in session.joined_rooms
        assert tracker.snapshot_room(ROOM) is None

    def test_kick_reports_forced_leave(self, tracker):
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        change = apply(tracker, membership(ROOM, "leave", target=BOT_USER, sender=ALICE, reason="bye"))
        assert change.current == Membership.LEFT
        assert change.forced is True
        assert change.reason == "bye"

    def test_activity_in_join_section_implies_joined(self, tracker, session):
        change = apply(tracker, message(ROOM, "hello"))
        assert change.current == Membership.JOINED
        assert session.is_joined(ROOM)

    def test_activity_in_leave_section_is_ignored(self, tracker):
        assert apply(tracker, message(ROOM, "hello", section="leave")) is None
        assert tracker.snapshot_room(ROOM) is None

    def test_invite_while_joined_is_ignored(self, tracker):
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        assert apply(tracker, invite(ROOM)) is None
        assert tracker.snapshot_room(ROOM).membership == Membership.JOINED

    def test_other_members_are_tracked(self, tracker):
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        apply(tracker, membership(ROOM, "join", target=BOB, sender=BOB))
        assert BOB in tracker.snapshot_room(ROOM).members
        apply(tracker, membership(ROOM, "leave", target=BOB, sender=BOB))
        assert BOB not in tracker.snapshot_room(ROOM).members


class TestIdempotence:
    """Replays and out-of-order events never change the outcome."""

    def test_replaying_membership_event_is_a_no_op(self, tracker):
        raw = membership(ROOM, "join", target=BOT_USER, sender=BOT_USER)
        apply(tracker, raw)
        once = tracker.snapshot_room(ROOM)

        assert apply(tracker, raw) is None
        assert tracker.snapshot_room(ROOM) == once

    def test_older_event_does_not_overwrite_newer(self, tracker):
        older = membership(ROOM, "join", target=BOB, sender=BOB)
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        newer = membership(ROOM, "leave", target=BOB, sender=BOB)
        apply(tracker, newer)

        apply(tracker, older)
        assert BOB not in tracker.snapshot_room(ROOM).members

    def test_replayed_events_cannot_resurrect_left_room(self, tracker, session):
        join = membership(ROOM, "join", target=BOT_USER, sender=BOT_USER)
        chatter = message(ROOM, "hello")
        leave = membership(ROOM, "leave", target=BOT_USER, sender=BOT_USER)
        for raw in (join, chatter, leave):
            apply(tracker, raw)

        apply(tracker, join)
        apply(tracker, chatter)
        assert tracker.snapshot_room(ROOM) is None
        assert not session.is_joined(ROOM)

    def test_rejoin_after_leave(self, tracker, session):
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        apply(tracker, membership(ROOM, "leave", target=BOT_USER, sender=BOT_USER))
        change = apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        assert change.current == Membership.JOINED
        assert session.is_joined(ROOM)


class TestEncryption:
    """The encryption flag is one-way."""

    def test_encryption_is_never_cleared(self, tracker):
        apply(tracker, membership(ROOM, "join", target=BOT_USER, sender=BOT_USER))
        assert not tracker.is_encrypted(ROOM)
        apply(tracker, encryption(ROOM))
        assert tracker.is_encrypted(ROOM)

        apply(tracker, message(ROOM, "still secret"))
        apply(tracker, membership(ROOM, "join", target=BOB, sender=BOB))
        assert tracker.is_encrypted(ROOM)

    def test_snapshots_are_immutable(self, tracker):
        apply(tracker, encryption(ROOM))
        snapshot = tracker.snapshot_room(ROOM)
        with pytest.raises(AttributeError):
            snapshot.encrypted = False


class TestDeviceTrust:
    """Test the device verification state machine."""

    def test_observe_creates_unknown_record(self, tracker):
        record = tracker.observe_device(ALICE, "PHONE", ROOM)
        assert record.state == TrustState.UNKNOWN
        assert record.rooms == frozenset([ROOM])

    def test_observe_accumulates_rooms(self, tracker):
        tracker.observe_device(ALICE, "PHONE", ROOM)
        record = tracker.observe_device(ALICE, "PHONE", "!other:example.org")
        assert record.rooms == frozenset([ROOM, "!other:example.org"])
        assert [r.key for r in tracker.devices_in_room(ROOM)] == [(ALICE, "PHONE")]

    def test_pending_to_verified(self, tracker):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        assert tracker.snapshot_device(ALICE, "PHONE").state == TrustState.PENDING
        assert tracker.device_for_transaction("tx1").key == (ALICE, "PHONE")

        record = tracker.complete_verification(ALICE, "PHONE", True, "tx1")
        assert record.state == TrustState.VERIFIED

    def test_pending_to_rejected(self, tracker):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        record = tracker.complete_verification(ALICE, "PHONE", False, "tx1")
        assert record.state == TrustState.REJECTED

    @pytest.mark.parametrize("verified", [True, False])
    def test_terminal_states_stay_terminal(self, tracker, verified):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        terminal = tracker.complete_verification(ALICE, "PHONE", verified, "tx1")

        assert tracker.begin_verification(ALICE, "PHONE", "tx2") == terminal
        assert tracker.complete_verification(ALICE, "PHONE", not verified, "tx2") == terminal
        assert tracker.snapshot_device(ALICE, "PHONE").state == terminal.state

    def test_reinitiate_reopens_terminal_record(self, tracker):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        tracker.complete_verification(ALICE, "PHONE", False, "tx1")

        record = tracker.begin_verification(ALICE, "PHONE", "tx2", reinitiate=True)
        assert record.state == TrustState.PENDING
        assert record.transaction_id == "tx2"

    def test_mismatched_transaction_is_ignored(self, tracker):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        record = tracker.complete_verification(ALICE, "PHONE", True, "tx-stale")
        assert record.state == TrustState.PENDING

    def test_complete_without_pending_is_ignored(self, tracker):
        tracker.observe_device(ALICE, "PHONE")
        record = tracker.complete_verification(ALICE, "PHONE", True)
        assert record.state == TrustState.UNKNOWN

    def test_distrust_overrides_verified(self, tracker):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        tracker.complete_verification(ALICE, "PHONE", True, "tx1")
        assert tracker.distrust(ALICE, "PHONE").state == TrustState.REJECTED

    def test_restore_devices(self, tracker):
        tracker.begin_verification(ALICE, "PHONE", "tx1")
        record = tracker.complete_verification(ALICE, "PHONE", True, "tx1")

        other = type(tracker)(tracker.session)
        other.restore_devices([record])
        assert other.snapshot_device(ALICE, "PHONE") == record


class TestConcurrentReads:
    """Readers only ever see whole snapshots."""

    def test_snapshot_reads_during_updates(self, tracker):
        tracker.observe_device(ALICE, "PHONE")
        errors = []

        def reader():
            for _ in range(2000):
                record = tracker.snapshot_device(ALICE, "PHONE")
                if record.state == TrustState.PENDING and record.transaction_id is None:
                    errors.append(record)

        thread = threading.Thread(target=reader)
        thread.start()
        for i in range(200):
            tracker.begin_verification(ALICE, "PHONE", f"tx{i}", reinitiate=True)
            tracker.complete_verification(ALICE, "PHONE", i % 2 == 0, f"tx{i}")
        thread.join()
        assert errors == []
