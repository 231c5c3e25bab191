"""
Tests for realtime fan-out.
"""

import asyncio

from starlette.websockets import WebSocketState

from inbox_gateway.broadcast import MESSAGE_INCOMING, Broadcaster, broadcaster


def run(coro):
    return asyncio.run(coro)


class TestBroadcaster:
    """Test the in-process registry directly."""

    def test_publish_with_no_subscribers(self):
        """Fan-out to nobody is a no-op."""
        hub = Broadcaster()

        assert run(hub.publish(MESSAGE_INCOMING, {"id": "m1"})) == 0

    def test_publish_reaches_every_open_connection(self, helpers):
        hub = Broadcaster()
        first, second = helpers.Connection(), helpers.Connection()
        hub.register(first)
        hub.register(second)

        delivered = run(hub.publish(MESSAGE_INCOMING, {"id": "m1"}))

        assert delivered == 2
        assert first.sent == second.sent == [{"event": "message_incoming", "data": {"id": "m1"}}]

    def test_closed_connection_skipped(self, helpers):
        hub = Broadcaster()
        closed = helpers.Connection(state=WebSocketState.DISCONNECTED)
        hub.register(closed)

        assert run(hub.publish(MESSAGE_INCOMING, {})) == 0
        assert closed.sent == []

    def test_failed_send_drops_connection(self, helpers):
        """One broken client neither blocks the others nor stays registered."""
        hub = Broadcaster()
        broken, healthy = helpers.Connection(fail=True), helpers.Connection()
        hub.register(broken)
        hub.register(healthy)

        delivered = run(hub.publish(MESSAGE_INCOMING, {"id": "m1"}))

        assert delivered == 1
        assert len(hub) == 1
        assert len(healthy.sent) == 1

    def test_register_is_idempotent(self, helpers):
        hub = Broadcaster()
        connection = helpers.Connection()
        hub.register(connection)
        hub.register(connection)
        hub.unregister(connection)
        hub.unregister(connection)

        assert len(hub) == 0


class TestRealtimeEndpoint:
    """Test the /ws endpoint end to end."""

    def test_websocket_receives_incoming(self, client):
        with client.websocket_connect("/ws") as websocket:
            assert len(broadcaster) == 1

            response = client.post("/webhook/test", json={"from": "15550001", "body": "live"})
            assert response.status_code == 200

            envelope = websocket.receive_json()
            assert envelope["event"] == "message_incoming"
            assert envelope["data"]["body"] == "live"
            assert envelope["data"]["direction"] == "inbound"

    def test_webhook_without_subscribers(self, client, helpers):
        response = client.post(
            "/webhook/meta",
            content=helpers.encode(helpers.payload(helpers.text("15550001", "nobody listening"))),
        )

        assert response.status_code == 200
        assert response.text == "ok"
