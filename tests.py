import io
import json
import logging
import signal
import threading

import pytest
import websocket
from websocket import ABNF

import risLive
from commonUtil import formatSecondsToHhmmss
from risLive import buildUrl, runLoop, subscribe
from risMessage import (RisAnnouncement, RisMessageError, decodeMessage, decodeSubscription,
    encodeMessage, formatAnnouncements, formatPath, formatTimestamp, formatUpdateLine,
    pingMessage, subscribeMessage)
from risReceiver import ReceiverStats, handleFrame, receiveHandler, startReceiver


UPDATE_FRAME = json.dumps({
    "type": "ris_message",
    "data": {
        "timestamp": 1695269583.730,
        "peer": "217.29.66.158",
        "peer_asn": "24482",
        "id": "217.29.66.158-018ab5f0fb720005",
        "host": "rrc10.ripe.net",
        "type": "UPDATE",
        "path": [24482, 6939, 38040, 23969],
        "community": [[24482, 2], [24482, 200], [24482, 12000]],
        "origin": "IGP",
        "med": 0,
        "announcements": [{"next_hop": "217.29.66.158", "prefixes": ["1.1.249.0/24"]}],
        "withdrawals": []
    }
}).encode()

PEER_STATE_FRAME = json.dumps({
    "type": "ris_message",
    "data": {
        "timestamp": 1695269590.5,
        "peer": "217.29.66.158",
        "peer_asn": "24482",
        "host": "rrc10.ripe.net",
        "type": "RIS_PEER_STATE",
        "state": "connected"
    }
}).encode()


# An integer timestamp too large to become a float
HUGE_TIMESTAMP_FRAME = b'{"type": "ris_message", "data": {"timestamp": 1' + b"0" * 400 + b"}}"


class FakeConn:
    """Stands in for websocket.WebSocket; with nothing queued, reads block until the close frame goes out"""

    def __init__(self, frames=(), failSendAfter=None):
        self.frames = list(frames)
        self.sent = []
        self.closeStatus = None
        self.closed = False
        self.failSendAfter = failSendAfter
        self.closeSent = threading.Event()

    def recv_data(self):
        if self.frames:
            frame = self.frames.pop(0)
            if isinstance(frame, Exception):
                raise frame
            return frame
        if not self.closeSent.wait(5):
            raise websocket.WebSocketTimeoutException("no close frame")
        return ABNF.OPCODE_CLOSE, b""

    def send(self, payload):
        if self.failSendAfter is not None and len(self.sent) >= self.failSendAfter:
            raise websocket.WebSocketConnectionClosedException("socket is already closed.")
        self.sent.append(payload)

    def send_close(self, status=websocket.STATUS_NORMAL, reason=b""):
        self.closeStatus = status
        self.closeSent.set()

    def close(self):
        self.closed = True
        self.closeSent.set()


class CloseFailsConn(FakeConn):
    def send_close(self, status=websocket.STATUS_NORMAL, reason=b""):
        raise websocket.WebSocketConnectionClosedException("socket is already closed.")


def text(frame):
    return ABNF.OPCODE_TEXT, frame


# ------------------------------------------
# Rendering

def testUpdateLine():
    message = decodeMessage(UPDATE_FRAME)
    assert message.isUpdate()

    line = formatUpdateLine(message.data)
    assert line == ("1695269583.730 UPDATE collector:rrc10.ripe.net, neighbor:24482, "
        "prefixes:[{217.29.66.158 [1.1.249.0/24]}], aspath:24482 6939 38040 23969")


def testTimestampHasThreeDecimals():
    assert formatTimestamp(1695269583.7) == "1695269583.700"
    assert formatTimestamp(12) == "12.000"


def testAnnouncementsTruncated():
    announcements = [
        RisAnnouncement("217.29.66.158", ["1.1.249.0/24", "1.1.250.0/24"]),
        RisAnnouncement("2001:7f8:10::24482", ["2a04:4e42::/48"]),
    ]
    full = '[%s]' % ' '.join(str(a) for a in announcements)
    assert len(full) > 48

    prefixes = formatAnnouncements(announcements)
    assert len(prefixes) == 48
    assert prefixes == full[:44] + "...]"


def testAnnouncementsAtLimitKept():
    # "[{1.2.3.4 [" + prefix + "]}]" is 14 characters plus the prefix
    assert formatAnnouncements([RisAnnouncement("1.2.3.4", ["a" * 34])]) == "[{1.2.3.4 [%s]}]" % ("a" * 34)
    assert formatAnnouncements([RisAnnouncement("1.2.3.4", ["a" * 35])]).endswith("...]")
    assert formatAnnouncements([]) == "[]"


def testPath():
    assert formatPath([24482, 6939, 38040, 23969]) == "24482 6939 38040 23969"
    assert formatPath([]) == ""
    assert formatPath([3333, 1103, [64512, 64513]]) == "3333 1103 {64512,64513}"


def testFormatSeconds():
    assert formatSecondsToHhmmss(3725) == "01:02:05"
    assert formatSecondsToHhmmss(59.9) == "00:00:59"


# ------------------------------------------
# Decoding

@pytest.mark.parametrize("frame", [
    b"not json",
    b"[1, 2]",
    b'{"data": {}}',
    b"\xff\xfe",
    b'{"type": "ris_message", "data": {"timestamp": "yesterday"}}',
    b'{"type": "ris_message", "data": {"path": ["a"]}}',
    b'{"type": "ris_message", "data": {"announcements": [{"next_hop": 1}]}}',
    b'{"type": "ris_message", "data": 7}',
    b'{"type": "ris_message", "data": []}',
    b'{"type": "ris_message", "data": 0}',
    b'{"type": "ris_message", "data": ""}',
    b"[" * 100000,
    HUGE_TIMESTAMP_FRAME,
    b'{"type": "ris_message", "data": {"timestamp": 1e400}}',
    b'{"type": "ris_message", "data": {"timestamp": NaN}}',
    b'{"type": "ris_message", "data": {"timestamp": -Infinity}}',
])
def testDecodeRejects(frame):
    with pytest.raises(RisMessageError):
        decodeMessage(frame)


def testDecodeOtherEnvelope():
    message = decodeMessage('{"type": "ris_error", "data": {"message": "bad subscription"}}')
    assert message.type == "ris_error"
    assert message.data == {"message": "bad subscription"}
    assert not message.isUpdate()


def testDecodeOpaqueFields():
    frame = json.loads(UPDATE_FRAME)
    frame["data"]["withdrawals"] = ["192.0.2.0/24", {"odd": "shape"}]
    frame["data"]["community"] = [[1, 2, 3], "large"]
    frame["data"]["aggregator"] = "65000:192.0.2.1"

    update = decodeMessage(json.dumps(frame)).data
    assert update.withdrawals == ["192.0.2.0/24", {"odd": "shape"}]
    assert update.community == [[1, 2, 3], "large"]


def testDecodeMissingFieldsDefault():
    update = decodeMessage('{"type": "ris_message", "data": {"type": "KEEPALIVE"}}').data
    assert update.timestamp == 0.0
    assert update.path == []
    assert update.announcements == []
    assert update.med == 0


# ------------------------------------------
# Control messages

def testPingMessage():
    assert encodeMessage(pingMessage()) == '{"type":"ping"}'


def testSubscribeRoundTrip():
    out = encodeMessage(subscribeMessage('', "0.0.0.0/0"))
    assert json.loads(out) == {"type": "ris_subscribe", "data": {"host": "", "prefix": "0.0.0.0/0"}}
    assert decodeSubscription(out) == ('', "0.0.0.0/0")

    out = encodeMessage(subscribeMessage("rrc21", "2a04:4e42::/48"))
    assert decodeSubscription(out) == ("rrc21", "2a04:4e42::/48")


def testSubscribeBadPrefix():
    with pytest.raises(RisMessageError):
        subscribeMessage('', "151.101.0.0/99")
    with pytest.raises(RisMessageError):
        subscribeMessage('', None)


def testSubscribeSendsMessage(caplog):
    caplog.set_level(logging.INFO)
    conn = FakeConn()
    subscribe(conn, "rrc21", "151.101.0.0/16")

    assert decodeSubscription(conn.sent[0]) == ("rrc21", "151.101.0.0/16")
    assert "Subscribing to:" in caplog.text


def testSubscribeBadPrefixIsFatal():
    with pytest.raises(SystemExit) as e:
        subscribe(FakeConn(), '', "not a prefix")
    assert e.value.code == 1


def testConnectFailureIsFatal(monkeypatch):
    def refuse(url, timeout=None):
        raise ConnectionRefusedError(111, "Connection refused")

    monkeypatch.setattr(websocket, "create_connection", refuse)
    with pytest.raises(SystemExit) as e:
        risLive.connect("ws://localhost:1/v1/ws/")
    assert e.value.code == 1


def testBuildUrl():
    assert buildUrl("ws://ris-live.ripe.net/v1/ws/", "") == "ws://ris-live.ripe.net/v1/ws/"
    assert buildUrl("ws://ris-live.ripe.net/v1/ws/", "my client") == "ws://ris-live.ripe.net/v1/ws/?client=my%20client"
    assert buildUrl("ws://example.net/ws?x=1", "c") == "ws://example.net/ws?x=1&client=c"


# ------------------------------------------
# Receiver

def testReceiverHandlesEveryKind(caplog):
    caplog.set_level(logging.INFO)
    conn = FakeConn([
        text(b"not json"),
        text(UPDATE_FRAME),
        text(b'{"type": "pong"}'),
        text(PEER_STATE_FRAME),
        websocket.WebSocketConnectionClosedException("Connection to remote host was lost."),
    ])
    done = threading.Event()
    stats = ReceiverStats()
    out = io.StringIO()

    receiveHandler(conn, done, stats, out)

    assert done.is_set()
    assert stats.toDict() == {"frames": 4, "updates": 1, "others": 1, "unhandled": 1, "bad_frames": 1}
    assert "Bad parse:" in caplog.text
    assert "Original message: b'not json'" in caplog.text
    assert "Received unhandled message:" in caplog.text
    assert "aspath:24482 6939 38040 23969" in caplog.text
    assert "1695269590.500 RIS_PEER_STATE rrc10.ripe.net 24482 []" in caplog.text
    assert "Error in receive:" in caplog.text
    assert out.getvalue() == "\n" + PEER_STATE_FRAME.decode() + "\n"


def testUnhandledMessageNotRendered(caplog):
    caplog.set_level(logging.INFO)
    handleFrame(b'{"type": "ris_error", "data": {"message": "x"}}', ReceiverStats())

    assert "Received unhandled message:" in caplog.text
    assert "aspath:" not in caplog.text
    assert "prefixes:" not in caplog.text


def testReceiverStopsOnCloseFrame(caplog):
    caplog.set_level(logging.INFO)
    conn = FakeConn([(ABNF.OPCODE_CLOSE, b""), text(UPDATE_FRAME)])
    done = threading.Event()

    receiveHandler(conn, done)

    assert done.is_set()
    assert "Connection closed by peer" in caplog.text
    assert len(conn.frames) == 1


# ------------------------------------------
# Keepalive loop

def testInterruptAfterReceiverDone(caplog):
    caplog.set_level(logging.INFO)
    conn = FakeConn()
    interrupt = threading.Event()
    done = threading.Event()
    interrupt.set()
    done.set()

    runLoop(conn, interrupt, done, pingInterval=60, closeTimeout=1)

    assert conn.closeStatus == websocket.STATUS_NORMAL
    assert conn.sent == []
    assert "Receiver channel closed, exiting" in caplog.text


def testInterruptTimesOut(caplog):
    caplog.set_level(logging.INFO)
    interrupt = threading.Event()
    interrupt.set()

    runLoop(FakeConn(), interrupt, threading.Event(), pingInterval=60, closeTimeout=0.05)

    assert "Timeout in closing receiving channel; exiting" in caplog.text


def testPingUntilWriteFails(caplog):
    conn = FakeConn(failSendAfter=2)

    runLoop(conn, threading.Event(), threading.Event(), pingInterval=0.01, closeTimeout=1)

    assert conn.sent == ['{"type":"ping"}', '{"type":"ping"}']
    assert conn.closeStatus is None
    assert "Error during writing to websocket:" in caplog.text


def testShutdownWithReceiverThread(caplog):
    caplog.set_level(logging.INFO)
    conn = FakeConn([text(UPDATE_FRAME)])
    interrupt = threading.Event()
    done = threading.Event()
    stats = ReceiverStats()

    t = startReceiver(conn, done, stats, io.StringIO())
    interrupt.set()
    runLoop(conn, interrupt, done, pingInterval=60, closeTimeout=2)
    t.join(1)

    assert not t.is_alive()
    assert stats.updates == 1
    assert "Connection closed by peer" in caplog.text
    assert "Receiver channel closed, exiting" in caplog.text


def testMain(monkeypatch, capsys):
    conn = FakeConn([text(UPDATE_FRAME)])
    monkeypatch.setattr(risLive, "connect", lambda url, timeout: conn)
    monkeypatch.setattr(risLive, "installInterruptHandler", lambda interrupt: interrupt.set())

    assert risLive.main(["--host", "rrc10", "--close-timeout", "2"]) == 0

    assert decodeSubscription(conn.sent[0]) == ("rrc10", "0.0.0.0/0")
    assert conn.closed
    assert "Received 1 messages in 00:00:00: 1 updates" in capsys.readouterr().out


def testBadFramesDoNotStopReceiver(caplog):
    caplog.set_level(logging.INFO)
    conn = FakeConn([
        text(b"[" * 100000),
        text(HUGE_TIMESTAMP_FRAME),
        text(UPDATE_FRAME),
        (ABNF.OPCODE_CLOSE, b""),
    ])
    done = threading.Event()
    stats = ReceiverStats()

    receiveHandler(conn, done, stats, io.StringIO())

    assert done.is_set()
    assert stats.badFrames == 2
    assert stats.updates == 1
    assert "aspath:24482 6939 38040 23969" in caplog.text
    assert "Connection closed by peer" in caplog.text


def testSigintReachesLoop(caplog):
    caplog.set_level(logging.INFO)
    oldInt = signal.getsignal(signal.SIGINT)
    oldTerm = signal.getsignal(signal.SIGTERM)
    interrupt = threading.Event()
    done = threading.Event()
    done.set()
    conn = FakeConn()
    try:
        risLive.installInterruptHandler(interrupt)
        signal.raise_signal(signal.SIGINT)
        assert interrupt.is_set()

        runLoop(conn, interrupt, done, pingInterval=60, closeTimeout=1)
    finally:
        signal.signal(signal.SIGINT, oldInt)
        signal.signal(signal.SIGTERM, oldTerm)

    assert conn.closeStatus == websocket.STATUS_NORMAL
    assert conn.sent == []
    assert "Receiver channel closed, exiting" in caplog.text


def testCloseFrameFails(caplog):
    caplog.set_level(logging.INFO)
    interrupt = threading.Event()
    interrupt.set()
    done = threading.Event()
    done.set()

    runLoop(CloseFailsConn(), interrupt, done, pingInterval=60, closeTimeout=1)

    assert "Error during closing websocket:" in caplog.text
    assert "Receiver channel closed, exiting" not in caplog.text
    assert "Timeout in closing receiving channel" not in caplog.text
