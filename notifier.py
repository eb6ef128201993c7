"""Parent notifications for passenger status transitions.

``StatusChangeNotifier.handle`` is registered as an on-write listener of the
passenger status store. For each meaningful transition it writes one inbox
record per linked parent in a single batch and makes a best-effort Web Push
delivery to each parent's registered devices.

Delivery is at-least-once: a redelivered write with identical before/after
snapshots is filtered by the status comparison, but two distinct writes that
both move a student into the same status can notify twice.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from pywebpush import WebPushException, webpush

from inbox_store import InboxStore, NotificationRecord
from passenger_status import StatusChange
from push_subscriptions import PushSubscriptionStore
from school_directory import SchoolDirectory

NOTIFICATION_KIND = "passengerStatus"
NOTIFY_STATUSES = ("boarded", "dropped", "absent")
STATUS_TITLES = {
    "boarded": "On Bus 🚌",
    "dropped": "Dropped Off ✅",
    "absent": "Marked Absent 🚫",
}
DEFAULT_TITLE = "Update"


def build_note(status: str, student_name: str) -> Tuple[str, str]:
    title = STATUS_TITLES.get(status, DEFAULT_TITLE)
    return title, f"{student_name} is {status}."


class PushSender:
    """Sends Web Push payloads to every device a user registered.

    Without a VAPID private key the sender is disabled and sends nothing.
    """

    def __init__(
        self,
        subscriptions: PushSubscriptionStore,
        vapid_private_key: str,
        vapid_subject: str,
        timeout: float = 10.0,
        send: Callable[..., object] = webpush,
    ):
        self._subscriptions = subscriptions
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout = timeout
        self._send = send

    @property
    def enabled(self) -> bool:
        return bool(self._vapid_private_key)

    async def send_to_user(self, user_id: str, title: str, body: str) -> int:
        if not self.enabled:
            return 0
        subscriptions = await self._subscriptions.get_user_subscriptions(user_id)
        if not subscriptions:
            return 0
        payload = json.dumps(
            {
                "notification": {"title": title, "body": body},
                "data": {"kind": NOTIFICATION_KIND},
            }
        )
        sent = 0
        for sub in subscriptions:
            try:
                self._send(
                    subscription_info=sub.to_subscription_info(),
                    data=payload,
                    vapid_private_key=self._vapid_private_key,
                    vapid_claims={"sub": self._vapid_subject},
                    timeout=self._timeout,
                )
                sent += 1
            except WebPushException as e:
                if e.response is not None and e.response.status_code in (404, 410):
                    # Subscription expired
                    print(f"[push] removing expired subscription for {user_id}")
                    await self._subscriptions.remove_subscription(user_id, sub.endpoint)
                else:
                    print(f"[push] WebPushException for {user_id}: {e}")
            except Exception as push_err:
                print(f"[push] push error for {user_id}: {push_err}")
        return sent


@dataclass
class NotificationOutcome:
    trip_id: str
    student_id: str
    status: str
    title: str
    body: str
    recipients: List[str] = field(default_factory=list)
    inbox_ids: List[str] = field(default_factory=list)
    pushes_sent: int = 0


class StatusChangeNotifier:
    def __init__(
        self,
        directory: SchoolDirectory,
        inbox: InboxStore,
        push_sender: Optional[PushSender] = None,
    ):
        self._directory = directory
        self._inbox = inbox
        self._push_sender = push_sender

    async def _student_name(self, student_id: str) -> str:
        try:
            return await self._directory.display_name(student_id)
        except Exception as exc:
            print(f"[notifier] student lookup failed for {student_id}: {exc}")
            return student_id

    async def handle(self, change: StatusChange) -> Optional[NotificationOutcome]:
        after = change.after
        if after is None:
            return None
        before_status = change.before.status if change.before is not None else None
        status = after.status
        student_id = after.student_id
        school_id = after.school_id
        if status not in NOTIFY_STATUSES or status == before_status:
            return None
        if not student_id or not school_id:
            return None

        student_name = await self._student_name(student_id)
        title, body = build_note(status, student_name)

        parent_ids = await self._directory.parent_ids_for(student_id, school_id)
        if not parent_ids:
            return None

        outcome = NotificationOutcome(
            trip_id=change.trip_id,
            student_id=student_id,
            status=status,
            title=title,
            body=body,
            recipients=list(parent_ids),
        )
        batch = self._inbox.batch()
        for parent_id in parent_ids:
            batch.add(
                parent_id,
                NotificationRecord(
                    title=title,
                    body=body,
                    data={
                        "kind": NOTIFICATION_KIND,
                        "status": status,
                        "studentId": student_id,
                        "studentName": student_name,
                        "tripId": change.trip_id,
                        "schoolId": school_id,
                    },
                ),
            )
            if self._push_sender is None:
                continue
            try:
                outcome.pushes_sent += await self._push_sender.send_to_user(parent_id, title, body)
            except Exception as exc:
                print(f"[notifier] push skipped for parent {parent_id}: {exc}")

        outcome.inbox_ids = await batch.commit()
        print(
            f"[notifier] {change.trip_id}/{student_id} -> {status}: "
            f"{len(outcome.inbox_ids)} inbox, {outcome.pushes_sent} push"
        )
        return outcome


__all__ = [
    "DEFAULT_TITLE",
    "NOTIFICATION_KIND",
    "NOTIFY_STATUSES",
    "NotificationOutcome",
    "PushSender",
    "STATUS_TITLES",
    "StatusChangeNotifier",
    "build_note",
]
