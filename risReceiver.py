"""
------------------------------------------

RIS Live receiver

Reads frames off the socket, decodes them and prints one line per
message. Runs on its own thread next to the keepalive loop in risLive.

------------------------------------------
"""

import logging
import sys
import threading

import websocket
from websocket import ABNF

from risMessage import RisMessageError, decodeMessage, formatOtherLine, formatUpdateLine


logger = logging.getLogger(__name__)


class ReceiverStats:
    __slots__ = ['frames', 'updates', 'others', 'unhandled', 'badFrames']

    def __init__(self):
        self.frames = 0
        self.updates = 0
        self.others = 0
        self.unhandled = 0
        self.badFrames = 0

    def toDict(self):
        data = {}
        data["frames"] = self.frames
        data["updates"] = self.updates
        data["others"] = self.others
        data["unhandled"] = self.unhandled
        data["bad_frames"] = self.badFrames
        return data


"""
handleFrame
Decodes and renders one frame, problems with the frame are logged
and never raised
@param msg raw frame
@param stats ReceiverStats
@param out stream the raw non UPDATE frames are dumped to
"""
def handleFrame(msg, stats, out=None):
    if out is None:
        out = sys.stdout
    stats.frames += 1

    try:
        message = decodeMessage(msg)
    except RisMessageError as e:
        stats.badFrames += 1
        logger.error("Bad parse: %s", e)
        logger.error("Original message: %r", msg)
        return

    if message.type != "ris_message":
        stats.unhandled += 1
        logger.info("Received unhandled message: %s", message)
        return

    payload = message.data
    if message.isUpdate():
        stats.updates += 1
        logger.info("%s", formatUpdateLine(payload))
    else:
        stats.others += 1
        if isinstance(msg, (bytes, bytearray)):
            msg = msg.decode("utf-8")
        print("", file=out)
        print(msg, file=out)
        out.flush()
        logger.info("%s", formatOtherLine(payload))


"""
receiveHandler
Keeps reading until the peer closes the connection or a read fails
done is set exactly once on the way out, whatever the reason
@param conn websocket.WebSocket
@param done threading.Event
"""
def receiveHandler(conn, done, stats=None, out=None):
    if stats is None:
        stats = ReceiverStats()

    try:
        while True:
            try:
                opcode, msg = conn.recv_data()
            except (websocket.WebSocketException, OSError) as e:
                logger.error("Error in receive: %s", e)
                return

            if opcode == ABNF.OPCODE_CLOSE:
                logger.info("Connection closed by peer")
                return

            handleFrame(msg, stats, out)
    finally:
        done.set()


def startReceiver(conn, done, stats=None, out=None):
    t = threading.Thread(
        target=receiveHandler,
        args=(conn, done, stats, out),
        name="ris-receiver",
        daemon=True,
    )
    t.start()
    return t
