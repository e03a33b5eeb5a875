"""
------------------------------------------

RIS Live message helpers

Decoding of inbound RIS Live envelopes, construction of the outbound
control messages and the one line renderings printed by the client.

Message format: https://ris-live.ripe.net/manual/

------------------------------------------
"""

import json
import math
from ipaddress import ip_network
from numbers import Real


DEFAULT_PREFIX = "0.0.0.0/0"

# Rendered announcement lists longer than this get cut down
MAX_PREFIXES_LEN = 48
TRUNCATED_PREFIXES_LEN = 44
TRUNCATED_MARKER = "...]"


class RisMessageError(ValueError):
    pass


class RisAnnouncement:
    __slots__ = ['nextHop', 'prefixes']

    def __init__(self, nextHop='', prefixes=None):
        self.nextHop = nextHop
        self.prefixes = prefixes if prefixes is not None else []

    def __str__(self):
        return '{%s [%s]}' % (self.nextHop, ' '.join(self.prefixes))

    def toDict(self):
        data = {}
        data["next_hop"] = self.nextHop
        data["prefixes"] = list(self.prefixes)
        return data


class RisUpdate:
    __slots__ = [
        'timestamp', 'peer', 'peerAsn', 'id', 'host', 'type', 'path',
        'community', 'origin', 'med', 'announcements', 'withdrawals',
    ]

    def __init__(self):
        self.timestamp = 0.0
        self.peer = ''
        self.peerAsn = ''
        self.id = ''
        self.host = ''
        self.type = ''
        self.path = []
        self.community = []
        self.origin = ''
        self.med = 0
        self.announcements = []
        self.withdrawals = []

    def toDict(self):
        data = {}
        data["timestamp"] = self.timestamp
        data["peer"] = self.peer
        data["peer_asn"] = self.peerAsn
        data["id"] = self.id
        data["host"] = self.host
        data["type"] = self.type
        data["path"] = self.path
        data["community"] = self.community
        data["origin"] = self.origin
        data["med"] = self.med
        data["announcements"] = [a.toDict() for a in self.announcements]
        data["withdrawals"] = self.withdrawals
        return data


class RisLiveMessage:
    __slots__ = ['type', 'data']

    def __init__(self, type, data=None):
        self.type = type
        self.data = data

    def isUpdate(self):
        return (self.type == "ris_message"
            and isinstance(self.data, RisUpdate)
            and self.data.type == "UPDATE")

    def toDict(self):
        data = {}
        data["type"] = self.type
        if isinstance(self.data, RisUpdate):
            data["data"] = self.data.toDict()
        elif self.data is not None:
            data["data"] = self.data
        return data

    def __str__(self):
        return json.dumps(self.toDict(), separators=(',', ':'))


# ------------------------------------------
# Decoding

def _isNumber(value):
    return isinstance(value, Real) and not isinstance(value, bool)


def _isInt(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _getField(data, name, check, expected, default):
    if name not in data or data[name] is None:
        return default
    value = data[name]
    if not check(value):
        raise RisMessageError("field %r: expected %s, got %r" % (name, expected, value))
    return value


def _isString(value):
    return isinstance(value, str)


def _isPath(value):
    if not isinstance(value, list):
        return False
    for asn in value:
        # AS_SET segments come through as nested lists
        if isinstance(asn, list):
            if not all(_isInt(member) for member in asn):
                return False
        elif not _isInt(asn):
            return False
    return True


def _rejectConstant(name):
    raise ValueError("%s is not valid JSON" % name)


def _decodeTimestamp(value):
    try:
        timestamp = float(value)
    except OverflowError as e:
        raise RisMessageError("field 'timestamp': out of range") from e
    if not math.isfinite(timestamp):
        raise RisMessageError("field 'timestamp': not a finite number")
    return timestamp


def _decodeAnnouncements(value):
    if not isinstance(value, list):
        raise RisMessageError("field 'announcements': expected list, got %r" % (value,))

    announcements = []
    for item in value:
        if not isinstance(item, dict):
            raise RisMessageError("announcement: expected object, got %r" % (item,))
        nextHop = _getField(item, "next_hop", _isString, "string", '')
        prefixes = _getField(item, "prefixes", lambda v: isinstance(v, list) and all(_isString(p) for p in v),
            "list of strings", [])
        announcements.append(RisAnnouncement(nextHop, prefixes))
    return announcements


"""
decodeUpdate
Builds a RisUpdate from the data object of a ris_message
Missing fields keep their zero value, community and withdrawals
are passed through as decoded
@param data dict
@return RisUpdate
"""
def decodeUpdate(data):
    if not isinstance(data, dict):
        raise RisMessageError("ris_message data: expected object, got %r" % (data,))

    u = RisUpdate()
    u.timestamp = _decodeTimestamp(_getField(data, "timestamp", _isNumber, "number", 0.0))
    u.peer = _getField(data, "peer", _isString, "string", '')
    u.peerAsn = _getField(data, "peer_asn", _isString, "string", '')
    u.id = _getField(data, "id", _isString, "string", '')
    u.host = _getField(data, "host", _isString, "string", '')
    u.type = _getField(data, "type", _isString, "string", '')
    u.path = _getField(data, "path", _isPath, "list of ASNs", [])
    u.community = data.get("community") or []
    u.origin = _getField(data, "origin", _isString, "string", '')
    u.med = _getField(data, "med", _isInt, "integer", 0)
    u.announcements = _decodeAnnouncements(data.get("announcements") or [])
    u.withdrawals = data.get("withdrawals") or []
    return u


"""
decodeMessage
Parses one text frame off the socket
@param raw str or bytes
@return RisLiveMessage
@raise RisMessageError if the frame is not a RIS Live envelope
"""
def decodeMessage(raw):
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise RisMessageError("invalid utf-8: %s" % e) from e

    try:
        parsed = json.loads(raw, parse_constant=_rejectConstant)
    except (ValueError, RecursionError) as e:
        raise RisMessageError(str(e)) from e

    if not isinstance(parsed, dict):
        raise RisMessageError("expected a JSON object, got %s" % type(parsed).__name__)

    msgType = parsed.get("type")
    if not isinstance(msgType, str):
        raise RisMessageError("missing message type")

    if msgType == "ris_message":
        data = parsed.get("data")
        return RisLiveMessage(msgType, decodeUpdate({} if data is None else data))

    return RisLiveMessage(msgType, parsed.get("data"))


# ------------------------------------------
# Control messages

def pingMessage():
    return {"type": "ping"}


"""
subscribeMessage
@param host collector to listen to, empty for all of them
@param prefix CIDR filter, the default is all of the IPv4 space
@return ris_subscribe control message
"""
def subscribeMessage(host='', prefix=DEFAULT_PREFIX):
    if host is None:
        host = ''
    if not isinstance(host, str):
        raise RisMessageError("host must be a string, got %r" % (host,))
    try:
        ip_network(prefix, strict=False)
    except (TypeError, ValueError) as e:
        raise RisMessageError("bad prefix filter %r: %s" % (prefix, e)) from e

    data = {}
    data["host"] = host
    data["prefix"] = prefix
    return {"type": "ris_subscribe", "data": data}


def encodeMessage(msg):
    try:
        return json.dumps(msg, separators=(',', ':'), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise RisMessageError("could not serialize %r: %s" % (msg, e)) from e


"""
decodeSubscription
Reads a serialized ris_subscribe message back into its filter
@param text serialized control message
@return (host, prefix)
"""
def decodeSubscription(text):
    try:
        msg = json.loads(text)
    except ValueError as e:
        raise RisMessageError(str(e)) from e

    if not isinstance(msg, dict) or msg.get("type") != "ris_subscribe":
        raise RisMessageError("not a ris_subscribe message: %r" % (text,))
    data = msg.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("prefix"), str):
        raise RisMessageError("subscription without a prefix filter: %r" % (text,))

    return data.get("host") or '', data["prefix"]


# ------------------------------------------
# Rendering

def formatTimestamp(timestamp):
    return "%.3f" % timestamp


def _renderValue(value):
    if isinstance(value, (list, tuple)):
        return '[%s]' % ' '.join(_renderValue(v) for v in value)
    if isinstance(value, dict):
        return '{%s}' % ' '.join(_renderValue(v) for v in value.values())
    return str(value)


"""
formatAnnouncements
Renders the announcements as [{next_hop [prefix prefix]} ...] and cuts
anything longer than 48 characters down to 44 plus "...]"
"""
def formatAnnouncements(announcements):
    prefixes = '[%s]' % ' '.join(str(a) for a in announcements)
    if len(prefixes) > MAX_PREFIXES_LEN:
        prefixes = prefixes[:TRUNCATED_PREFIXES_LEN] + TRUNCATED_MARKER
    return prefixes


def formatPath(path):
    asns = []
    for asn in path:
        if isinstance(asn, list):
            asns.append('{%s}' % ','.join(str(member) for member in asn))
        else:
            asns.append(str(asn))
    return ' '.join(asns)


def formatUpdateLine(update):
    return "%s %s collector:%s, neighbor:%s, prefixes:%s, aspath:%s" % (
        formatTimestamp(update.timestamp), update.type, update.host,
        update.peerAsn, formatAnnouncements(update.announcements),
        formatPath(update.path)
    )


def formatOtherLine(update):
    return "%s %s %s %s %s" % (
        formatTimestamp(update.timestamp), update.type, update.host,
        update.peerAsn, _renderValue(update.withdrawals)
    )
