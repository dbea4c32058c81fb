"""Mock notification dispatcher that records events."""

from typing import Any


class MockNotifier:
    """
    Records notifications instead of posting them.

    Usage:
        notifier = MockNotifier()
        notifier.users_with_endpoints.add("user-1")
        ...
        assert notifier.event_names() == ["request_submitted"]
    """

    def __init__(self):
        self.sent: list[tuple[str, str, dict[str, Any]]] = []  # (event, user_id, payload)
        self.users_with_endpoints: set[str] = set()
        self.fail = False

    async def has_assigned_endpoints(self, db, user_id: str) -> bool:
        return user_id in self.users_with_endpoints

    async def notify(self, db, event: str, user_id: str, payload: dict[str, Any]) -> int:
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append((event, user_id, payload))
        return 1

    def event_names(self) -> list[str]:
        return [event for event, _, _ in self.sent]

    async def close(self):
        pass
