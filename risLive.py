"""
------------------------------------------

RIS Live client

Subscribe to the RIS Live stream and print a condensed line for every
BGP message received. Ctrl-C closes the connection cleanly.

Adapted from https://ris-live.ripe.net/
Requires 'websocket-client'

------------------------------------------
"""

import argparse
import logging
import signal
import threading
import time
from urllib.parse import quote

import websocket

from commonUtil import fatal, formatSecondsToHhmmss, setupLogging
from risMessage import DEFAULT_PREFIX, RisMessageError, encodeMessage, pingMessage, subscribeMessage
from risReceiver import ReceiverStats, startReceiver


logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://ris-live.ripe.net/v1/ws/"
DEFAULT_CLIENT = "ris-live-py"
PING_INTERVAL = 60
CLOSE_TIMEOUT = 1
CONNECT_TIMEOUT = 10


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description='Print BGP messages from the RIS Live stream')
    p.add_argument(
        'url', nargs='?', default=DEFAULT_URL, help='RIS Live websocket endpoint')
    p.add_argument(
        '--host', default='', help='Only listen to this collector, ie rrc21 (default: all collectors)')
    p.add_argument(
        '--prefix', default=DEFAULT_PREFIX, help='CIDR prefix filter (default: %(default)s)')
    p.add_argument(
        '--client', default=DEFAULT_CLIENT, help='Client name sent to RIS Live')
    p.add_argument(
        '--ping-interval', type=float, default=PING_INTERVAL, help='Seconds between keepalive pings')
    p.add_argument(
        '--close-timeout', type=float, default=CLOSE_TIMEOUT, help='Seconds to wait for the receiver on shutdown')
    p.add_argument(
        '--connect-timeout', type=float, default=CONNECT_TIMEOUT, help='Seconds to wait for the handshake')
    p.add_argument(
        '-v', action='store_true', help='Enable verbose logging')

    return p.parse_args(argv)


"""
buildUrl
Tags the endpoint with our client name so RIS Live can tell clients apart
"""
def buildUrl(url, client):
    if not client:
        return url
    sep = '&' if '?' in url else '?'
    return "%s%sclient=%s" % (url, sep, quote(client))


"""
connect
Opens the websocket, there is no retry so a failed handshake ends the program
@return websocket.WebSocket
"""
def connect(url, timeout=CONNECT_TIMEOUT):
    logger.info("Connecting to: %s", url)
    try:
        conn = websocket.create_connection(url, timeout=timeout)
    except (websocket.WebSocketException, OSError) as e:
        fatal("Error connecting to Websocket Server: %s", e)

    # Reads block until the receiver sees a frame or the socket goes away
    conn.settimeout(None)
    return conn


"""
subscribe
Sends one ris_subscribe message
@param host collector filter, empty for all collectors
@param prefix CIDR filter
"""
def subscribe(conn, host='', prefix=DEFAULT_PREFIX):
    try:
        msg = subscribeMessage(host, prefix)
        out = encodeMessage(msg)
    except RisMessageError as e:
        fatal("Error marshalling subscription message: %s", e)

    logger.info("Subscribing to: %s", out)
    try:
        conn.send(out)
    except (websocket.WebSocketException, OSError) as e:
        fatal("Error sending subscription message: %s", e)
    return out


"""
installInterruptHandler
SIGINT and SIGTERM just flag the interrupt event, runLoop does the rest
"""
def installInterruptHandler(interrupt):
    def handler(signum, frame):
        interrupt.set()

    signal.signal(signal.SIGINT, handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, handler)


"""
runLoop
Sends a ping every pingInterval seconds until a write fails or the
interrupt event is set. On interrupt the close frame goes out and we
give the receiver closeTimeout seconds to notice before returning.
@param conn websocket.WebSocket
@param interrupt threading.Event set by the signal handler
@param done threading.Event set by the receiver when it exits
"""
def runLoop(conn, interrupt, done, pingInterval=PING_INTERVAL, closeTimeout=CLOSE_TIMEOUT):
    try:
        pingStr = encodeMessage(pingMessage())
    except RisMessageError as e:
        fatal("Error marshalling ping message: %s", e)

    while True:
        if not interrupt.wait(pingInterval):
            try:
                conn.send(pingStr)
            except (websocket.WebSocketException, OSError) as e:
                logger.error("Error during writing to websocket: %s", e)
                return
            logger.debug("Sent ping")
            continue

        logger.info("Received SIGINT interrupt signal. Closing all pending connections")
        try:
            conn.send_close(websocket.STATUS_NORMAL, b"")
        except (websocket.WebSocketException, OSError) as e:
            logger.error("Error during closing websocket: %s", e)
            return

        if done.wait(closeTimeout):
            logger.info("Receiver channel closed, exiting")
        else:
            logger.info("Timeout in closing receiving channel; exiting")
        return


def printSummary(stats, seconds):
    print("\n------------------------------")
    print("Received %d messages in %s: %d updates, %d other, %d unhandled, %d bad" % (
        stats.frames, formatSecondsToHhmmss(seconds), stats.updates,
        stats.others, stats.unhandled, stats.badFrames))


def main(argv=None):
    args = parse_args(argv)
    setupLogging(args.v)

    done = threading.Event()
    interrupt = threading.Event()
    installInterruptHandler(interrupt)

    conn = connect(buildUrl(args.url, args.client), args.connect_timeout)

    # Start timer
    tic = time.perf_counter()
    stats = ReceiverStats()
    try:
        startReceiver(conn, done, stats)
        subscribe(conn, args.host, args.prefix)
        runLoop(conn, interrupt, done, args.ping_interval, args.close_timeout)
    finally:
        conn.close()

    toc = time.perf_counter()
    printSummary(stats, toc - tic)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
