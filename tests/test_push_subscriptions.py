import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from push_subscriptions import PushSubscriptionStore  # noqa: E402

KEYS = {"p256dh": "pub", "auth": "secret"}


def test_subscriptions_are_kept_per_user(tmp_path):
    store = PushSubscriptionStore(tmp_path / "subs.json")
    assert asyncio.run(store.add_subscription("p1", "https://push/a", KEYS)) is True
    assert asyncio.run(store.add_subscription("p1", "https://push/a", KEYS)) is False
    assert asyncio.run(store.add_subscription("p1", "https://push/b", KEYS, "Firefox")) is True
    assert asyncio.run(store.add_subscription("p2", "https://push/c", KEYS)) is True

    assert asyncio.run(store.count()) == 3
    assert asyncio.run(store.count("p1")) == 2
    subs = asyncio.run(store.get_user_subscriptions("p1"))
    assert {sub.endpoint for sub in subs} == {"https://push/a", "https://push/b"}
    assert subs[0].to_subscription_info() == {
        "endpoint": subs[0].endpoint,
        "keys": {"p256dh": "pub", "auth": "secret"},
    }

    reloaded = PushSubscriptionStore(tmp_path / "subs.json")
    assert asyncio.run(reloaded.count("p1")) == 2


def test_remove_and_reject_incomplete(tmp_path):
    store = PushSubscriptionStore(tmp_path / "subs.json")
    assert asyncio.run(store.add_subscription("p1", "https://push/a", {"p256dh": "pub"})) is False
    asyncio.run(store.add_subscription("p1", "https://push/a", KEYS))
    assert asyncio.run(store.remove_subscription("p1", "https://push/a")) is True
    assert asyncio.run(store.remove_subscription("p1", "https://push/a")) is False
    assert asyncio.run(store.get_user_subscriptions("p1")) == []
