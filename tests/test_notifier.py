import asyncio
import json
import sys
from pathlib import Path

import pytest
from pywebpush import WebPushException

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from inbox_store import InboxStore  # noqa: E402
from notifier import PushSender, StatusChangeNotifier, build_note  # noqa: E402
from passenger_status import PassengerStatus, PassengerStatusStore, StatusChange  # noqa: E402
from push_subscriptions import PushSubscriptionStore  # noqa: E402
from school_directory import SchoolDirectory  # noqa: E402

KEYS = {"p256dh": "pub", "auth": "secret"}


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code
        self.text = ""


class FakeSend:
    """Stands in for pywebpush.webpush; fails for endpoints listed in ``errors``."""

    def __init__(self, errors=None):
        self.calls = []
        self.errors = errors or {}

    def __call__(self, subscription_info, data, vapid_private_key, vapid_claims, timeout):
        endpoint = subscription_info["endpoint"]
        self.calls.append((endpoint, json.loads(data)))
        error = self.errors.get(endpoint)
        if error is not None:
            raise error


@pytest.fixture
def stores(tmp_path):
    directory = SchoolDirectory(tmp_path / "directory.json")
    inbox = InboxStore(tmp_path / "inbox.json")
    subs = PushSubscriptionStore(tmp_path / "subs.json")
    asyncio.run(directory.upsert_student("s1", {"schoolId": "sch1", "firstName": "Ali", "lastName": "Khan"}))
    asyncio.run(directory.link_parent("p1", "sch1", ["s1"]))
    asyncio.run(directory.link_parent("p2", "sch1", ["s1"]))
    asyncio.run(directory.link_parent("p3", "sch2", ["s1"]))
    return directory, inbox, subs


def _change(before, after, student_id="s1", school_id="sch1"):
    def snap(status):
        if status is None:
            return None
        return PassengerStatus(trip_id="trip-1", student_id=student_id, status=status, school_id=school_id)

    return StatusChange("trip-1", student_id, snap(before), snap(after))


def test_build_note_titles():
    assert build_note("boarded", "Ali") == ("On Bus 🚌", "Ali is boarded.")
    assert build_note("dropped", "Ali") == ("Dropped Off ✅", "Ali is dropped.")
    assert build_note("absent", "Ali") == ("Marked Absent 🚫", "Ali is absent.")
    assert build_note("pending", "Ali")[0] == "Update"


def test_transition_fans_out_to_linked_parents(stores):
    directory, inbox, _ = stores
    notifier = StatusChangeNotifier(directory, inbox)
    outcome = asyncio.run(notifier.handle(_change("pending", "boarded")))

    assert outcome.recipients == ["p1", "p2"]
    assert len(outcome.inbox_ids) == 2
    for parent_id in ("p1", "p2"):
        items = asyncio.run(inbox.list_inbox(parent_id))
        assert len(items) == 1
        assert items[0]["title"] == "On Bus 🚌"
        assert items[0]["body"] == "Ali Khan is boarded."
        assert items[0]["read"] is False
        assert items[0]["data"]["kind"] == "passengerStatus"
        assert items[0]["data"]["studentId"] == "s1"
    assert asyncio.run(inbox.count("p3")) == 0


def test_first_write_counts_as_transition(stores):
    directory, inbox, _ = stores
    outcome = asyncio.run(StatusChangeNotifier(directory, inbox).handle(_change(None, "absent")))
    assert outcome.title == "Marked Absent 🚫"
    assert asyncio.run(inbox.count()) == 2


@pytest.mark.parametrize(
    "change",
    [
        _change("boarded", "boarded"),
        _change("boarded", None),
        _change("boarded", "pending"),
        _change("pending", "boarded", school_id=None),
        _change("pending", "boarded", student_id="nobody"),
    ],
)
def test_non_events_write_nothing(stores, change):
    directory, inbox, _ = stores
    assert asyncio.run(StatusChangeNotifier(directory, inbox).handle(change)) is None
    assert asyncio.run(inbox.count()) == 0


def test_name_lookup_failure_falls_back_to_id(stores):
    directory, inbox, _ = stores

    async def broken(student_id):
        raise RuntimeError("directory offline")

    directory.display_name = broken
    outcome = asyncio.run(StatusChangeNotifier(directory, inbox).handle(_change("pending", "dropped")))
    assert outcome.body == "s1 is dropped."


def test_push_is_best_effort_and_prunes_expired(stores):
    directory, inbox, subs = stores
    asyncio.run(subs.add_subscription("p1", "https://push/p1-phone", KEYS))
    asyncio.run(subs.add_subscription("p1", "https://push/p1-old", KEYS))
    asyncio.run(subs.add_subscription("p2", "https://push/p2-phone", KEYS))
    send = FakeSend(
        errors={
            "https://push/p1-old": WebPushException("gone", response=FakeResponse(410)),
            "https://push/p2-phone": WebPushException("server error", response=FakeResponse(500)),
        }
    )
    sender = PushSender(subs, vapid_private_key="private", vapid_subject="mailto:t@example.org", send=send)
    outcome = asyncio.run(StatusChangeNotifier(directory, inbox, sender).handle(_change("pending", "boarded")))

    assert outcome.pushes_sent == 1
    assert len(send.calls) == 3
    payload = send.calls[0][1]
    assert payload["notification"] == {"title": "On Bus 🚌", "body": "Ali Khan is boarded."}
    assert payload["data"] == {"kind": "passengerStatus"}
    # inbox writes survive push failures
    assert asyncio.run(inbox.count()) == 2
    remaining = asyncio.run(subs.get_user_subscriptions("p1"))
    assert [sub.endpoint for sub in remaining] == ["https://push/p1-phone"]
    assert asyncio.run(subs.count("p2")) == 1


def test_sender_without_key_is_disabled(stores):
    _, _, subs = stores
    asyncio.run(subs.add_subscription("p1", "https://push/p1-phone", KEYS))
    send = FakeSend()
    sender = PushSender(subs, vapid_private_key="", vapid_subject="mailto:t@example.org", send=send)
    assert sender.enabled is False
    assert asyncio.run(sender.send_to_user("p1", "t", "b")) == 0
    assert send.calls == []


def test_store_writes_drive_notifications(stores, tmp_path):
    directory, inbox, _ = stores
    passengers = PassengerStatusStore(tmp_path / "passengers.json")
    passengers.on_write(StatusChangeNotifier(directory, inbox).handle)

    asyncio.run(passengers.seed_trip("trip-1", "sch1", [{"studentId": "s1"}]))
    assert asyncio.run(inbox.count()) == 0

    asyncio.run(passengers.set_status("trip-1", "s1", "boarded"))
    asyncio.run(passengers.set_status("trip-1", "s1", "boarded"))
    assert asyncio.run(inbox.count("p1")) == 1

    asyncio.run(passengers.delete("trip-1", "s1"))
    assert asyncio.run(inbox.count("p1")) == 1
