from __future__ import annotations

import argparse
import json
import logging
import socket
import sys
from typing import Callable, Optional

from .bench import run_benchmark
from .client import TftpClient
from .config import TransferConfig
from .constants import DEFAULT_MAX_RETRIES, DEFAULT_PORT, DEFAULT_TIMEOUT_S
from .server import TftpServer
from .session import TransferResult

logger = logging.getLogger(__name__)

READ_CHOICES = ("1", "r", "read", "get")
WRITE_CHOICES = ("2", "w", "write", "put")


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _config(args: argparse.Namespace) -> TransferConfig:
    return TransferConfig(timeout_s=args.timeout, max_retries=args.retries, dally=args.dally)


def _report(result: TransferResult, as_json: bool) -> int:
    payload = {
        "role": result.role.value,
        "file": result.filename,
        "ok": result.ok,
        "bytes": result.bytes_transferred,
        "blocks": result.blocks,
        "seconds": result.duration_s,
        "mbps": result.throughput_mbps,
        "timeouts": result.timeouts,
        "retransmits": result.retransmits,
        "message": result.message,
    }
    if as_json:
        print(json.dumps(payload, indent=2))
    elif result.ok:
        print(f"{result.filename}: {result.message}")
    else:
        print(f"{result.filename}: {result.message}", file=sys.stderr)
    return 0 if result.ok else 1


def _with_client(args: argparse.Namespace, action: Callable[[TftpClient], int]) -> int:
    try:
        client = TftpClient(args.address, args.port, config=_config(args))
    except socket.gaierror as exc:
        print(f"Cannot resolve {args.address}: {exc.strerror}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Cannot open client socket: {exc}", file=sys.stderr)
        return 1
    with client:
        return action(client)


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        server = TftpServer(args.host, args.port, root=args.root, config=_config(args))
    except OSError as exc:
        print(f"Could not bind to port {args.port}, may already be in use: {exc}", file=sys.stderr)
        return 1
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("interrupted")
            server.shutdown()
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    return _with_client(args, lambda c: _report(c.request_read(args.filename, args.out), args.json))


def cmd_put(args: argparse.Namespace) -> int:
    remote = args.remote_name or args.filename
    return _with_client(args, lambda c: _report(c.request_write(remote, args.filename), args.json))


def cmd_client(args: argparse.Namespace) -> int:
    def interact(client: TftpClient) -> int:
        try:
            op = input("Enter '1' to read a file or '2' to write a file: ").strip().lower()
            filename = input("Enter the file name: ").strip()
        except EOFError:
            print("No input.", file=sys.stderr)
            return 1
        if not filename:
            print("A file name is required.", file=sys.stderr)
            return 1
        if op in READ_CHOICES:
            return _report(client.request_read(filename), args.json)
        if op in WRITE_CHOICES:
            return _report(client.request_write(filename), args.json)
        print("Invalid operation - only enter '1' or '2'.", file=sys.stderr)
        return 1

    return _with_client(args, interact)


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        size_bytes=args.size_bytes,
        loss_rate=args.loss_rate,
        delay_ms=args.delay_ms,
        timeout_s=args.timeout,
        max_retries=args.retries,
        seed=args.seed,
    )
    payload = {"role": "bench", **{k: getattr(r, k) for k in r.__dataclass_fields__}}
    print(json.dumps(payload, indent=2) if args.json else payload)
    return 0 if r.intact else 1


def build_parser() -> ArgumentParser:
    p = ArgumentParser(prog="tftp", description="Trivial file transfer over UDP (octet mode).")
    p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True, parser_class=ArgumentParser)

    def add_common(x: argparse.ArgumentParser, dally: bool = False) -> None:
        x.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_S, help="seconds to wait before retransmitting")
        x.add_argument("--retries", type=int, default=DEFAULT_MAX_RETRIES, help="retransmissions before giving up")
        if dally:
            x.add_argument("--no-dally", dest="dally", action="store_false", help="do not linger after the final ACK")
        else:
            x.add_argument("--dally", action="store_true", help="linger after the final ACK of a read")
        x.add_argument("--json", action="store_true")

    def add_server_address(x: argparse.ArgumentParser) -> None:
        x.add_argument("address")
        x.add_argument("port", type=int)

    serve = sub.add_parser("serve", help="serve files from a directory")
    add_common(serve, dally=True)
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.add_argument("--root", default=".")
    serve.set_defaults(func=cmd_serve)

    client = sub.add_parser("client", help="prompt for an operation and a file name")
    add_common(client)
    add_server_address(client)
    client.set_defaults(func=cmd_client)

    get = sub.add_parser("get", help="read a file from the server")
    add_common(get)
    add_server_address(get)
    get.add_argument("filename")
    get.add_argument("--out", default=None, help="local path (default: same name)")
    get.set_defaults(func=cmd_get)

    put = sub.add_parser("put", help="write a local file to the server")
    add_common(put)
    add_server_address(put)
    put.add_argument("filename")
    put.add_argument("--as", dest="remote_name", default=None, help="name on the server")
    put.set_defaults(func=cmd_put)

    bench = sub.add_parser("bench", help="loopback write+read under simulated loss")
    add_common(bench)
    bench.set_defaults(timeout=0.25, retries=20)
    bench.add_argument("--size-bytes", type=int, default=1_000_000)
    bench.add_argument("--loss-rate", type=float, default=0.0)
    bench.add_argument("--delay-ms", type=int, default=0)
    bench.add_argument("--seed", type=int, default=None)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
