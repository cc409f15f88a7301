"""CLI entry point for the ovpnctl client.

Usage::

    ovpnctl --host 127.0.0.1 --port 7505 status
    ovpnctl status --version 3 --json
    ovpnctl send version
"""

import argparse
import collections.abc
import configparser
import dataclasses
import datetime
import json
import logging
import os
import sys

from . import (
    DEFAULT_HOST, DEFAULT_PORT, ManagementClient, ManagementError,
    ServerError,
)


def _format_value(value):
    """Render an optional field for tab-separated output."""
    if value is None:
        return "-"
    if isinstance(value, datetime.datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _to_json(value):
    """Convert report records into JSON-ready values."""
    if dataclasses.is_dataclass(value):
        return {f.name: _to_json(getattr(value, f.name))
                for f in dataclasses.fields(value)}
    if isinstance(value, collections.abc.Mapping):
        return {k: _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    return value


def cmd_status(conn, args):
    """Handle the 'status' subcommand."""
    report = conn.get_status(args.version)

    if args.json:
        print(json.dumps(_to_json(report), indent=2))
        return

    if report.title:
        print(report.title)
    if report.time:
        print("Updated: {}".format(_format_value(report.time)))

    print("{}\t{}\t{}\t{}\t{}\t{}".format(
        "NAME", "REAL", "VIRTUAL", "RECEIVED", "SENT", "SINCE"))
    for c in report.clients:
        print("{}\t{}\t{}\t{}\t{}\t{}".format(
            _format_value(c.common_name), _format_value(c.real_address),
            _format_value(c.virtual_address),
            _format_value(c.bytes_received), _format_value(c.bytes_sent),
            _format_value(c.connected_since)))

    if report.routes:
        print()
        print("{}\t{}\t{}\t{}".format("VIRTUAL", "NAME", "REAL", "LAST REF"))
        for r in report.routes:
            print("{}\t{}\t{}\t{}".format(
                _format_value(r.virtual_address),
                _format_value(r.common_name),
                _format_value(r.real_address), _format_value(r.last_ref)))

    if report.global_stats:
        print()
        for name, value in report.global_stats.items():
            print("{}={}".format(name, _format_value(value)))

    for err in report.errors:
        print("Warning: line {}: {}".format(err.line_number, err.reason),
              file=sys.stderr)


def cmd_send(conn, args):
    """Handle the 'send' subcommand."""
    parts = args.cmd
    # argparse.REMAINDER may include a leading '--'; strip it
    if parts and parts[0] == "--":
        parts = parts[1:]
    if not parts:
        print("Error: no command specified", file=sys.stderr)
        sys.exit(1)
    block = conn.send_command(" ".join(parts))
    for line in block.lines:
        print(line)
    if block.message:
        print(block.message)


def _default_config_path():
    """Return the path to ovpnctl.conf in the client directory."""
    client_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(client_dir, "ovpnctl.conf")


def _load_config(path, explicit):
    """Load settings from a config file.

    Args:
        path: File path to read.
        explicit: True if the user passed --config (errors are fatal).

    Returns a dict with keys 'host', 'port', 'timeout' (any may be None).
    """
    if not os.path.exists(path):
        if explicit:
            print("Error: config file not found: {}".format(path),
                  file=sys.stderr)
            sys.exit(1)
        return {}

    config = configparser.ConfigParser()
    try:
        config.read(path)
    except configparser.Error as e:
        if explicit:
            print("Error: failed to parse config file: {}".format(e),
                  file=sys.stderr)
            sys.exit(1)
        print("Warning: failed to parse config file: {}".format(e),
              file=sys.stderr)
        return {}

    result = {}

    host = config.get("connection", "host", fallback=None)
    if host is not None:
        host = host.strip() or None
    result["host"] = host

    for key, getter in (("port", config.getint),
                        ("timeout", config.getfloat)):
        try:
            result[key] = getter("connection", key, fallback=None)
        except ValueError as e:
            if explicit:
                print("Error: invalid {} in config file: {}".format(key, e),
                      file=sys.stderr)
                sys.exit(1)
            print("Warning: invalid {} in config file: {}".format(key, e),
                  file=sys.stderr)
            result[key] = None

    return result


def _env_number(name, kind):
    """Read a numeric environment variable, exiting on bad values."""
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return kind(raw)
    except ValueError:
        print("Error: {} must be a number, got: {!r}".format(name, raw),
              file=sys.stderr)
        sys.exit(1)


def _resolve(*candidates):
    """Return the first candidate that is not None."""
    for value in candidates:
        if value is not None:
            return value
    return None


def main(argv=None) -> None:
    """Parse arguments and dispatch to the appropriate subcommand."""
    env_host = os.environ.get("OVPNCTL_HOST") or None
    env_port = _env_number("OVPNCTL_PORT", int)
    env_timeout = _env_number("OVPNCTL_TIMEOUT", float)

    parser = argparse.ArgumentParser(
        prog="ovpnctl",
        description="OpenVPN management interface client",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Management hostname or IP (default: {})".format(
            env_host if env_host is not None else DEFAULT_HOST),
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Management port (default: {})".format(
            env_port if env_port is not None else DEFAULT_PORT),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Socket timeout in seconds (default: none)",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="Path to config file (default: client/ovpnctl.conf)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log to stderr (-vv for debug output)",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    p_status = subparsers.add_parser("status",
                                     help="Show connected clients")
    p_status.add_argument("--version", type=int, default=None,
                          choices=(1, 2, 3),
                          help="Status format version to request")
    p_status.add_argument("--json", action="store_true",
                          help="Print the report as JSON")

    p_send = subparsers.add_parser("send",
                                   help="Send a raw management command")
    p_send.add_argument("cmd", nargs=argparse.REMAINDER,
                        help="Command to send")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose > 1 else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    # --- Load config file ---
    config_path = args.config if args.config else _default_config_path()
    cfg = _load_config(config_path, bool(args.config))

    # --- Resolve settings (CLI > env > config > default) ---
    host = _resolve(args.host, env_host, cfg.get("host"), DEFAULT_HOST)
    port = _resolve(args.port, env_port, cfg.get("port"), DEFAULT_PORT)
    timeout = _resolve(args.timeout, env_timeout, cfg.get("timeout"))

    dispatch = {
        "send": cmd_send,
        "status": cmd_status,
    }

    try:
        with ManagementClient.connect(host, port, timeout=timeout,
                                      connect_timeout=timeout) as conn:
            dispatch[args.command](conn, args)
    except ServerError as e:
        print("Error: {}".format(e.message), file=sys.stderr)
        sys.exit(1)
    except ManagementError as e:
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
