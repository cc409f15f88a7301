"""Parser for the OpenVPN management "status" report.

Two layouts are understood.  The tagged layout, produced by ``status 2``
(comma-delimited) and ``status 3`` (tab-delimited)::

    TITLE,OpenVPN 2.4.6 x86_64-pc-linux-gnu
    TIME,Thu Jan 17 12:34:56 2019,1547728496
    HEADER,CLIENT_LIST,Common Name,Real Address,Virtual Address,...
    CLIENT_LIST,alice,198.51.100.7:1194,10.8.0.6,...
    HEADER,ROUTING_TABLE,Virtual Address,Common Name,Real Address,...
    ROUTING_TABLE,10.8.0.6,alice,198.51.100.7:1194,...
    GLOBAL_STATS,Max bcast/mcast queue length,0

and the legacy sectioned layout of ``status`` / ``status 1``::

    OpenVPN CLIENT LIST
    Updated,Thu Jan 17 12:34:56 2019
    Common Name,Real Address,Bytes Received,Bytes Sent,Connected Since
    alice,198.51.100.7:1194,1024,2048,Thu Jan 17 12:00:00 2019
    ROUTING TABLE
    Virtual Address,Common Name,Real Address,Last Ref
    10.8.0.6,alice,198.51.100.7:1194,Thu Jan 17 12:34:50 2019
    GLOBAL STATS
    Max bcast/mcast queue length,0

Columns differ between daemon versions, so every row is resolved by
column name through the header that precedes it.  Bad values degrade to
None, unparseable rows are collected as RowError, and only a response
without any known section is rejected.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .protocol import END_MARKER, UnrecognizedFormatError

logger = logging.getLogger(__name__)

HEADER = "HEADER"
TITLE = "TITLE"
TIME = "TIME"
CLIENT_LIST = "CLIENT_LIST"
ROUTING_TABLE = "ROUTING_TABLE"
GLOBAL_STATS = "GLOBAL_STATS"

# Section title lines of the legacy layout
LEGACY_TITLES = {
    "OpenVPN CLIENT LIST": CLIENT_LIST,
    "ROUTING TABLE": ROUTING_TABLE,
    "GLOBAL STATS": GLOBAL_STATS,
}
LEGACY_UPDATED = "Updated"

# Common name the daemon reports for clients that have not authenticated
UNDEF = "UNDEF"

# Tags of rows that become records
_BUILDER_TAGS = (CLIENT_LIST, ROUTING_TABLE)

TIME_FORMATS = ("%a %b %d %H:%M:%S %Y", "%Y-%m-%d %H:%M:%S")

# Column layout of OpenVPN 2.5+, used when a HEADER line lists no columns
DEFAULT_COLUMNS = {
    CLIENT_LIST: (
        "Common Name", "Real Address", "Virtual Address",
        "Virtual IPv6 Address", "Bytes Received", "Bytes Sent",
        "Connected Since", "Connected Since (time_t)", "Username",
        "Client ID", "Peer ID", "Data Channel Cipher",
    ),
    ROUTING_TABLE: (
        "Virtual Address", "Common Name", "Real Address", "Last Ref",
        "Last Ref (time_t)",
    ),
}


def _frozen_map():
    # type: () -> Mapping
    return MappingProxyType({})


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClientRecord:
    """One connected VPN client.

    Any field may be None when the daemon version does not emit the
    column or the value could not be parsed.  Columns without a dedicated
    field are kept in ``extra`` by column name.
    """
    common_name: Optional[str] = None
    real_address: Optional[str] = None
    virtual_address: Optional[str] = None
    virtual_ipv6_address: Optional[str] = None
    bytes_received: Optional[int] = None
    bytes_sent: Optional[int] = None
    connected_since: Optional[datetime] = None
    username: Optional[str] = None
    client_id: Optional[int] = None
    peer_id: Optional[int] = None
    cipher: Optional[str] = None
    extra: Mapping[str, str] = field(default_factory=_frozen_map, hash=False)

    @property
    def real_ip(self) -> Optional[str]:
        """Real address without the trailing port."""
        if self.real_address is None:
            return None
        host, sep, _port = self.real_address.rpartition(":")
        return host if sep else self.real_address

    @property
    def authenticated(self) -> bool:
        """False for the UNDEF placeholder of a half-open session."""
        return self.common_name not in (None, UNDEF)


@dataclass(frozen=True)
class RouteEntry:
    """A virtual address routed to a client, referenced by common name."""
    virtual_address: Optional[str] = None
    common_name: Optional[str] = None
    real_address: Optional[str] = None
    last_ref: Optional[datetime] = None
    extra: Mapping[str, str] = field(default_factory=_frozen_map, hash=False)


@dataclass(frozen=True)
class RowError:
    """A row that could not be interpreted at all."""
    line_number: int
    line: str
    reason: str


@dataclass(frozen=True)
class StatusReport:
    """Parsed status report.  Rows keep the order the daemon sent them."""
    clients: Tuple[ClientRecord, ...] = ()
    routes: Tuple[RouteEntry, ...] = ()
    global_stats: Mapping[str, Optional[int]] = field(
        default_factory=_frozen_map, hash=False)
    title: Optional[str] = None
    time: Optional[datetime] = None
    errors: Tuple[RowError, ...] = ()

    def client(self, common_name: str) -> Optional[ClientRecord]:
        """Return the first client with this common name, or None."""
        for record in self.clients:
            if record.common_name == common_name:
                return record
        return None

    def routes_for(self, common_name: str) -> List[RouteEntry]:
        """Return the routes owned by the given common name."""
        return [r for r in self.routes if r.common_name == common_name]


# ---------------------------------------------------------------------------
# Field conversion
# ---------------------------------------------------------------------------

def _split(line):
    # type: (str) -> Tuple[str, List[str]]
    """Split a row on its delimiter: tab for status 3, comma otherwise."""
    delim = "\t" if "\t" in line else ","
    return delim, line.split(delim)


def _is_garbage(line):
    # type: (str) -> bool
    """True for lines holding control characters or undecodable bytes."""
    for ch in line:
        if (ch < " " and ch != "\t") or ch in "\x7f\ufffd":
            return True
    return False


def _known_tag_prefix(tag):
    # type: (str) -> Optional[str]
    """Return the known row tag a mangled tag such as "CLIENT_LIST bad"
    starts with, or None."""
    words = tag.split(None, 1)
    if len(words) == 2 and words[0] in _BUILDER_TAGS:
        return words[0]
    return None


def _map_row(columns, values):
    # type: (Sequence[str], Sequence[str]) -> Dict[str, str]
    """Pair row values with column names.

    Values beyond the declared columns are keyed "column <n>" by their
    1-based position in the row.  Missing trailing values are simply
    absent from the result.
    """
    row = dict(zip(columns, values))
    for pos in range(len(columns), len(values)):
        row["column {}".format(pos + 1)] = values[pos]
    return row


def _text(row, column):
    # type: (Dict[str, str], str) -> Optional[str]
    value = row.pop(column, None)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _to_int(value):
    # type: (Optional[str]) -> Optional[int]
    if value is None or not value.strip():
        return None
    value = value.strip()
    # int() would also take signs, underscores and non-ASCII digits
    if not (value.isascii() and value.isdigit()):
        logger.debug("Non-numeric value: %r", value)
        return None
    return int(value)


def _int(row, column):
    # type: (Dict[str, str], str) -> Optional[int]
    return _to_int(_text(row, column))


def _from_epoch(seconds):
    # type: (Optional[int]) -> Optional[datetime]
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug("Timestamp out of range: %r", seconds)
        return None


def _parse_time_text(text):
    # type: (Optional[str]) -> Optional[datetime]
    """Parse a human readable daemon timestamp as UTC."""
    if not text:
        return None
    text = " ".join(text.split())
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    logger.debug("Unrecognized time format: %r", text)
    return None


def _timestamp(row, column):
    # type: (Dict[str, str], str) -> Optional[datetime]
    """Resolve a time from "<column> (time_t)", else from "<column>"."""
    epoch = _from_epoch(_int(row, column + " (time_t)"))
    text = _text(row, column)
    if epoch is not None:
        return epoch
    return _parse_time_text(text)


def _client_from_row(row):
    # type: (Dict[str, str]) -> ClientRecord
    row = dict(row)
    return ClientRecord(
        common_name=_text(row, "Common Name"),
        real_address=_text(row, "Real Address"),
        virtual_address=_text(row, "Virtual Address"),
        virtual_ipv6_address=_text(row, "Virtual IPv6 Address"),
        bytes_received=_int(row, "Bytes Received"),
        bytes_sent=_int(row, "Bytes Sent"),
        connected_since=_timestamp(row, "Connected Since"),
        username=_text(row, "Username"),
        client_id=_int(row, "Client ID"),
        peer_id=_int(row, "Peer ID"),
        cipher=_text(row, "Data Channel Cipher"),
        extra=MappingProxyType(row),
    )


def _route_from_row(row):
    # type: (Dict[str, str]) -> RouteEntry
    row = dict(row)
    return RouteEntry(
        virtual_address=_text(row, "Virtual Address"),
        common_name=_text(row, "Common Name"),
        real_address=_text(row, "Real Address"),
        last_ref=_timestamp(row, "Last Ref"),
        extra=MappingProxyType(row),
    )


_BUILDERS = {
    CLIENT_LIST: _client_from_row,
    ROUTING_TABLE: _route_from_row,
}


# ---------------------------------------------------------------------------
# Report parsing
# ---------------------------------------------------------------------------

class _ReportBuilder:
    """Accumulates rows while parse_status walks the lines."""

    def __init__(self):
        self.rows = {CLIENT_LIST: [], ROUTING_TABLE: []}
        self.global_stats = {}  # type: Dict[str, Optional[int]]
        self.title = None  # type: Optional[str]
        self.time = None  # type: Optional[datetime]
        self.errors = []  # type: List[RowError]
        self.recognized = False

    def error(self, number, line, reason):
        # type: (int, str, str) -> None
        logger.warning("Skipping status line %d (%s): %r",
                       number, reason, line)
        self.errors.append(RowError(number, line, reason))

    def add_row(self, section, columns, values):
        # type: (str, Sequence[str], Sequence[str]) -> None
        self.rows[section].append(_BUILDERS[section](_map_row(columns, values)))

    def add_global(self, values):
        # type: (Sequence[str]) -> None
        value = values[1] if len(values) > 1 else None
        self.global_stats[values[0].strip()] = _to_int(value)
        self.recognized = True

    def build(self):
        # type: () -> StatusReport
        return StatusReport(
            clients=tuple(self.rows[CLIENT_LIST]),
            routes=tuple(self.rows[ROUTING_TABLE]),
            global_stats=MappingProxyType(self.global_stats),
            title=self.title,
            time=self.time,
            errors=tuple(self.errors),
        )


def parse_status(lines: Sequence[str]) -> StatusReport:
    """Parse the payload lines of a status response.

    Accepts the tagged (status 2/3) and legacy (status 1) layouts; an
    ``END`` line, if present, ends the input.  Raises
    UnrecognizedFormatError when no known section appears.
    """
    report = _ReportBuilder()
    columns = {}  # type: Dict[str, List[str]]
    legacy = None  # type: Optional[str]
    legacy_columns = None  # type: Optional[List[str]]

    for number, line in enumerate(lines, 1):
        if line == END_MARKER:
            break
        if not line.strip():
            continue
        if _is_garbage(line):
            report.error(number, line, "control characters in line")
            continue

        if line in LEGACY_TITLES:
            legacy = LEGACY_TITLES[line]
            legacy_columns = None
            report.recognized = True
            continue

        delim, fields = _split(line)

        if fields[0] == HEADER and len(fields) >= 2:
            legacy = None
            section = fields[1]
            columns[section] = fields[2:] or list(
                DEFAULT_COLUMNS.get(section, ()))
            if section in _BUILDERS:
                report.recognized = True
            else:
                logger.debug("Skipping unknown section %r", section)
            continue

        if len(fields) < 2:
            report.error(number, line, "no field delimiter")
            continue

        # -- Legacy sectioned layout ----------------------------------------

        if legacy is not None:
            if legacy == GLOBAL_STATS:
                report.add_global(fields)
            elif legacy_columns is None:
                if legacy == CLIENT_LIST and fields[0] == LEGACY_UPDATED:
                    report.time = _parse_time_text(line.split(delim, 1)[1])
                else:
                    legacy_columns = fields
            else:
                report.add_row(legacy, legacy_columns, fields)
            continue

        # -- Tagged layout --------------------------------------------------

        tag = fields[0]
        if tag == TITLE:
            report.title = line.split(delim, 1)[1].strip()
        elif tag == TIME:
            report.time = (_from_epoch(_to_int(fields[-1]))
                           or _parse_time_text(fields[1]))
        elif tag == GLOBAL_STATS:
            report.add_global(fields[1:])
        elif tag in _BUILDERS:
            if tag not in columns:
                report.error(number, line,
                             "{} row before its HEADER line".format(tag))
                continue
            report.add_row(tag, columns[tag], fields[1:])
        elif _known_tag_prefix(tag):
            report.error(number, line, "malformed {} tag".format(
                _known_tag_prefix(tag)))
        else:
            logger.debug("Skipping row of unknown section %r", tag)

    if not report.recognized:
        raise UnrecognizedFormatError(lines)
    return report.build()
