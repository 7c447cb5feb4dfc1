import anyio
from fastapi.testclient import TestClient
from logo_hunt.main import app, broadcast_event, _prepare_message, _WS_CONNECTIONS


class FakeWS:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, msg: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(("text", msg))

    async def send_json(self, obj):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(("json", obj))


def test_prepare_message_fallback_on_unserializable():
    assert isinstance(_prepare_message({"ok": True}), str)
    assert _prepare_message({"f": lambda x: x}) is None


def test_broadcast_delivers_and_drops_dead_sockets():
    good = FakeWS()
    dead = FakeWS(fail=True)
    _WS_CONNECTIONS[good] = {}
    _WS_CONNECTIONS[dead] = {}

    anyio.run(broadcast_event, {"type": "reveal", "companyId": "acme", "pieceIndex": 2})
    anyio.run(broadcast_event, {"type": "reveal", "companyId": "acme", "pieceIndex": 3})

    # every event reaches live sockets, no throttling
    assert len(good.sent) == 2
    assert dead not in _WS_CONNECTIONS
    assert good in _WS_CONNECTIONS


def test_ws_ping_pong(engine):
    client = TestClient(app)
    with client.websocket_connect('/ws') as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
